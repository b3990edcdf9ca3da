"""
Core node pack - the built-in node types every flow can use.

Executors read configuration from ``ctx.config`` and values from
``ctx.inputs``. Inputs that were not wired are simply absent, so every
executor applies its own fallback rather than relying on validation.
"""

import json
import logging
import math
import random
import re
import time
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import httpx

from flowforge.graph.errors import ExecutorError
from flowforge.graph.node import NodeTypeRegistry, NodeTypeSpec, PortSpec
from flowforge.graph.registry import ExecutorRegistry, NodeExecutor
from flowforge.graph.types import UPSTREAM_ERRORS_KEY, ExecutionContext, ExecutionResult
from flowforge.graph.values import DataKind, kind_of, to_boolean, to_number, to_string

logger = logging.getLogger(__name__)

MAX_RANGE = 100_000


def port(
    port_id: str, name: str = "", kind: DataKind = DataKind.ANY, required: bool = False
) -> PortSpec:
    return PortSpec(id=port_id, name=name or port_id, kind=kind, required=required)


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------


async def number_input(ctx: ExecutionContext) -> ExecutionResult:
    return ExecutionResult(outputs={"out": to_number(ctx.config.get("value", 0))})


async def text_input(ctx: ExecutionContext) -> ExecutionResult:
    return ExecutionResult(outputs={"out": to_string(ctx.config.get("text", ""))})


async def boolean_input(ctx: ExecutionContext) -> ExecutionResult:
    return ExecutionResult(outputs={"out": to_boolean(ctx.config.get("value", False))})


# ---------------------------------------------------------------------------
# Process
# ---------------------------------------------------------------------------


def _arithmetic(operation: str, a: float, b: float) -> float:
    if operation == "subtract":
        return a - b
    if operation == "multiply":
        return a * b
    if operation == "divide":
        return a / b if b != 0 else 0
    if operation == "power":
        try:
            return math.pow(a, b)
        except (ValueError, OverflowError) as e:
            raise ExecutorError(f"Cannot raise {a:g} to the power {b:g}: {e}") from e
    if operation == "modulo":
        # Sign follows the dividend, like C fmod
        return math.fmod(a, b) if b != 0 else 0
    return a + b


async def math_node(ctx: ExecutionContext) -> ExecutionResult:
    a = to_number(ctx.inputs.get("a", 0))
    b = to_number(ctx.inputs.get("b", 0))
    operation = str(ctx.config.get("operation", "add"))
    return ExecutionResult(outputs={"out": _arithmetic(operation, a, b)})


async def merge(ctx: ExecutionContext) -> ExecutionResult:
    a = ctx.inputs.get("a")
    b = ctx.inputs.get("b")
    if ctx.config.get("mode", "array") == "object":
        return ExecutionResult(outputs={"out": {"a": a, "b": b}})
    return ExecutionResult(outputs={"out": [a, b]})


# ---------------------------------------------------------------------------
# Logic
# ---------------------------------------------------------------------------


def _loose_equals(a: Any, b: Any) -> bool:
    if a == b:
        return True
    if isinstance(a, int | float | bool) or isinstance(b, int | float | bool):
        try:
            return to_number(a, strict=True) == to_number(b, strict=True)
        except ValueError:
            return False
    return False


def _numeric_pair(a: Any, b: Any) -> tuple[float, float]:
    try:
        return to_number(a, strict=True), to_number(b, strict=True)
    except ValueError:
        raise ExecutorError(
            f"Cannot compare non-numeric values: {to_string(a)}, {to_string(b)}"
        ) from None


async def compare(ctx: ExecutionContext) -> ExecutionResult:
    a = ctx.inputs.get("a")
    b = ctx.inputs.get("b")
    operator = str(ctx.config.get("operator", "=="))

    if operator == "===":
        result = type(a) is type(b) and a == b
    elif operator == "!==":
        result = not (type(a) is type(b) and a == b)
    elif operator == "!=":
        result = not _loose_equals(a, b)
    elif operator in ("<", ">", "<=", ">="):
        x, y = _numeric_pair(a, b)
        result = {"<": x < y, ">": x > y, "<=": x <= y, ">=": x >= y}[operator]
    else:
        result = _loose_equals(a, b)

    return ExecutionResult(outputs={"result": result})


async def condition(ctx: ExecutionContext) -> ExecutionResult:
    chosen = "true" if to_boolean(ctx.inputs.get("condition")) else "false"
    return ExecutionResult(outputs={"out": ctx.inputs.get(chosen)})


async def gate(ctx: ExecutionContext) -> ExecutionResult:
    enabled = to_boolean(ctx.inputs.get("enable"))
    return ExecutionResult(outputs={"out": ctx.inputs.get("input") if enabled else None})


async def switch(ctx: ExecutionContext) -> ExecutionResult:
    index = math.floor(to_number(ctx.inputs.get("index", 0)))
    outputs: dict[str, Any] = {"out0": None, "out1": None, "out2": None}
    if 0 <= index <= 2:
        outputs[f"out{index}"] = ctx.inputs.get("input")
    else:
        logger.warning(f"Switch index {index} out of range (0-2), input dropped")
    return ExecutionResult(outputs=outputs)


async def for_each(ctx: ExecutionContext) -> ExecutionResult:
    items = ctx.inputs.get("array")
    template = to_string(ctx.config.get("template", ctx.inputs.get("template", "{{item}}")))
    if not isinstance(items, list | tuple):
        raise ExecutorError("Input must be an array")

    results = [
        template.replace("{{item}}", to_string(item)).replace("{{index}}", str(index))
        for index, item in enumerate(items)
    ]
    return ExecutionResult(outputs={"results": results, "count": len(results)})


async def range_node(ctx: ExecutionContext) -> ExecutionResult:
    count = max(0, math.floor(to_number(ctx.inputs.get("count", ctx.config.get("count", 0)))))
    if count > MAX_RANGE:
        raise ExecutorError(f"Range count {count} exceeds maximum of {MAX_RANGE}")
    return ExecutionResult(outputs={"array": list(range(count))})


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------


async def text_join(ctx: ExecutionContext) -> ExecutionResult:
    texts = [
        to_string(ctx.inputs[key])
        for key in ("text1", "text2", "text3")
        if ctx.inputs.get(key) is not None
    ]
    separator = to_string(ctx.config.get("separator", ctx.inputs.get("separator", "")))
    return ExecutionResult(outputs={"out": separator.join(texts)})


async def text_split(ctx: ExecutionContext) -> ExecutionResult:
    text = to_string(ctx.inputs.get("text", ""))
    delimiter = to_string(ctx.config.get("delimiter", ctx.inputs.get("delimiter", ",")))
    if delimiter == "":
        return ExecutionResult(outputs={"out": list(text)})
    return ExecutionResult(outputs={"out": text.split(delimiter)})


async def text_replace(ctx: ExecutionContext) -> ExecutionResult:
    text = to_string(ctx.inputs.get("text", ""))
    find = to_string(ctx.inputs.get("find", ""))
    replace = to_string(ctx.inputs.get("replace", ""))

    if ctx.config.get("use_regex"):
        try:
            result = re.sub(find, lambda _: replace, text)
            return ExecutionResult(outputs={"out": result})
        except re.error as e:
            logger.debug(f"Invalid pattern {find!r} ({e}); falling back to literal replace")

    if find == "":
        return ExecutionResult(outputs={"out": text})
    return ExecutionResult(outputs={"out": text.replace(find, replace)})


async def text_length(ctx: ExecutionContext) -> ExecutionResult:
    return ExecutionResult(outputs={"out": len(to_string(ctx.inputs.get("text", "")))})


async def text_case(ctx: ExecutionContext) -> ExecutionResult:
    text = to_string(ctx.inputs.get("text", ""))
    case = ctx.config.get("case", "upper")

    if case == "upper":
        result = text.upper()
    elif case == "lower":
        result = text.lower()
    elif case == "title":
        result = re.sub(r"\b\w", lambda m: m.group().upper(), text)
    elif case == "sentence":
        result = text[:1].upper() + text[1:].lower()
    else:
        result = text

    return ExecutionResult(outputs={"out": result})


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


async def json_parse(ctx: ExecutionContext) -> ExecutionResult:
    raw = to_string(ctx.inputs.get("json", "{}"))
    try:
        return ExecutionResult(outputs={"out": json.loads(raw)})
    except json.JSONDecodeError as e:
        raise ExecutorError(f"Invalid JSON: {e}") from e


async def json_stringify(ctx: ExecutionContext) -> ExecutionResult:
    value = ctx.inputs.get("object")
    if ctx.config.get("pretty"):
        text = json.dumps(value, indent=2, ensure_ascii=False, default=str)
    else:
        text = json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)
    return ExecutionResult(outputs={"out": text})


async def get_property(ctx: ExecutionContext) -> ExecutionResult:
    obj = ctx.inputs.get("object")
    key = to_string(ctx.inputs.get("key", ctx.config.get("key", "")))
    if not isinstance(obj, Mapping | list):
        return ExecutionResult(outputs={"out": None})

    value: Any = obj
    for part in key.split("."):
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            value = None
            break

    return ExecutionResult(outputs={"out": value})


async def array_get(ctx: ExecutionContext) -> ExecutionResult:
    items = ctx.inputs.get("array")
    if not isinstance(items, list | tuple):
        return ExecutionResult(outputs={"out": None})

    index = math.floor(to_number(ctx.inputs.get("index", 0)))
    if -len(items) <= index < len(items):
        return ExecutionResult(outputs={"out": items[index]})
    return ExecutionResult(outputs={"out": None})


async def array_length(ctx: ExecutionContext) -> ExecutionResult:
    items = ctx.inputs.get("array")
    return ExecutionResult(outputs={"out": len(items) if isinstance(items, list | tuple) else 0})


async def create_array(ctx: ExecutionContext) -> ExecutionResult:
    items = [ctx.inputs[key] for key in ("item0", "item1", "item2", "item3") if key in ctx.inputs]
    return ExecutionResult(outputs={"out": items})


class HTTPRequestExecutor:
    """
    HTTPRequest node: sends one request with httpx and exposes the decoded
    body, status code and response headers.

    Deadlines come from the engine's per-node timeout, so the client itself
    is created without one.
    """

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    async def __call__(self, ctx: ExecutionContext) -> ExecutionResult:
        url = to_string(ctx.inputs.get("url", ctx.config.get("url", "")))
        if not url:
            raise ValueError("URL is required")

        method = str(ctx.config.get("method", "GET")).upper()
        headers = dict(ctx.inputs.get("headers") or {})
        body = ctx.inputs.get("body")

        content: str | None = None
        if body is not None and method not in ("GET", "HEAD"):
            if not any(name.lower() == "content-type" for name in headers):
                headers["Content-Type"] = "application/json"
            content = body if isinstance(body, str) else json.dumps(body)

        async with httpx.AsyncClient(transport=self._transport, timeout=None) as client:
            response = await client.request(method, url, headers=headers, content=content)

        if "application/json" in response.headers.get("content-type", ""):
            data: Any = response.json()
        else:
            data = response.text

        return ExecutionResult(
            outputs={
                "response": data,
                "status": response.status_code,
                "headers": dict(response.headers),
            }
        )


# ---------------------------------------------------------------------------
# Utility
# ---------------------------------------------------------------------------


async def delay(ctx: ExecutionContext) -> ExecutionResult:
    seconds = max(0.0, float(to_number(ctx.config.get("seconds", ctx.inputs.get("seconds", 1.0)))))
    await ctx.token.sleep(seconds)
    return ExecutionResult(outputs={"out": ctx.inputs.get("input")})


def _describe(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        size = f"{len(value)} chars"
    elif isinstance(value, list | tuple):
        size = f"{len(value)} items"
    elif isinstance(value, Mapping):
        size = f"{len(value)} keys"
    else:
        size = "-"
    return {"type": kind_of(value), "size": size, "timestamp": time.time()}


async def debug(ctx: ExecutionContext) -> ExecutionResult:
    """Pass a value through and record it, or record upstream failures."""
    label = ctx.config.get("label") or ctx.node_id
    upstream = ctx.inputs.get(UPSTREAM_ERRORS_KEY) or []

    if upstream:
        errors = [e.to_dict() if hasattr(e, "to_dict") else dict(e) for e in upstream]
        logger.warning(f"[Debug {label}] Upstream error: {errors[0]['error']}")
        return ExecutionResult(
            outputs={"out": None},
            config_update={
                "debug_mode": "error",
                "debug_error": errors[0],
                "debug_all_errors": errors,
            },
        )

    value = ctx.inputs.get("input")
    logger.info(f"[Debug {label}] {to_string(value)}")
    return ExecutionResult(
        outputs={"out": value},
        config_update={
            "debug_mode": "success",
            "debug_value": value,
            "debug_meta": _describe(value),
        },
    )


async def display(ctx: ExecutionContext) -> ExecutionResult:
    value = ctx.inputs.get("in")
    logger.info(f"[Display] {to_string(value)}")
    return ExecutionResult(config_update={"display_value": value})


async def comment(ctx: ExecutionContext) -> ExecutionResult:
    return ExecutionResult()


async def random_node(ctx: ExecutionContext) -> ExecutionResult:
    low = to_number(ctx.config.get("min", ctx.inputs.get("min", 0)))
    high = to_number(ctx.config.get("max", ctx.inputs.get("max", 1)))
    value: float = low + random.random() * (high - low)
    if ctx.config.get("integer"):
        value = math.floor(value)
    return ExecutionResult(outputs={"out": value})


async def timestamp(ctx: ExecutionContext) -> ExecutionResult:
    now = datetime.now(UTC)
    return ExecutionResult(outputs={"ms": int(now.timestamp() * 1000), "iso": now.isoformat()})


# ---------------------------------------------------------------------------
# Convert
# ---------------------------------------------------------------------------


async def to_string_node(ctx: ExecutionContext) -> ExecutionResult:
    return ExecutionResult(outputs={"out": to_string(ctx.inputs.get("value"))})


async def to_number_node(ctx: ExecutionContext) -> ExecutionResult:
    return ExecutionResult(outputs={"out": to_number(ctx.inputs.get("value"))})


async def to_boolean_node(ctx: ExecutionContext) -> ExecutionResult:
    return ExecutionResult(outputs={"out": to_boolean(ctx.inputs.get("value"))})


# ---------------------------------------------------------------------------
# Pack definition
# ---------------------------------------------------------------------------

N, S, B, A, O = DataKind.NUMBER, DataKind.STRING, DataKind.BOOLEAN, DataKind.ARRAY, DataKind.OBJECT

CORE_NODE_TYPES: list[NodeTypeSpec] = [
    # Input
    NodeTypeSpec(
        type="NumberInput", title="Number", category="Input",
        description="Outputs a number value",
        outputs=[port("out", "value", N)],
    ),
    NodeTypeSpec(
        type="TextInput", title="Text", category="Input",
        description="Outputs a text value",
        outputs=[port("out", "text", S)],
    ),
    NodeTypeSpec(
        type="BooleanInput", title="Boolean", category="Input",
        description="Outputs a boolean value",
        outputs=[port("out", "value", B)],
    ),
    # Process
    NodeTypeSpec(
        type="Math", title="Math", category="Process",
        description="Perform math operations",
        inputs=[port("a", "A", N, required=True), port("b", "B", N, required=True)],
        outputs=[port("out", "result", N)],
    ),
    NodeTypeSpec(
        type="Merge", title="Merge", category="Process",
        description="Merge multiple inputs",
        inputs=[port("a", "A", required=True), port("b", "B")],
        outputs=[port("out", "output")],
    ),
    # Output
    NodeTypeSpec(
        type="Display", title="Display", category="Output",
        description="Display result",
        inputs=[port("in", "input", required=True)],
    ),
    # Logic
    NodeTypeSpec(
        type="Condition", title="Condition", category="Logic",
        description="Branch based on condition",
        inputs=[
            port("condition", "condition", B, required=True),
            port("true", "if true"),
            port("false", "if false"),
        ],
        outputs=[port("out", "output")],
    ),
    NodeTypeSpec(
        type="Compare", title="Compare", category="Logic",
        description="Compare two values (==, !=, <, >, <=, >=)",
        inputs=[port("a", "A", required=True), port("b", "B", required=True)],
        outputs=[port("result", "result", B)],
    ),
    NodeTypeSpec(
        type="Gate", title="Gate", category="Logic",
        description="Pass through value when enabled",
        inputs=[port("input", required=True), port("enable", kind=B, required=True)],
        outputs=[port("out", "output")],
    ),
    NodeTypeSpec(
        type="Switch", title="Switch", category="Logic",
        description="Route input to one of multiple outputs",
        inputs=[port("input", required=True), port("index", kind=N, required=True)],
        outputs=[port("out0", "out 0"), port("out1", "out 1"), port("out2", "out 2")],
    ),
    NodeTypeSpec(
        type="ForEach", title="For Each", category="Logic",
        description="Apply a text template to every array item",
        inputs=[port("array", kind=A, required=True), port("template", kind=S)],
        outputs=[port("results", kind=A), port("count", kind=N)],
    ),
    NodeTypeSpec(
        type="Range", title="Range", category="Logic",
        description="Create the array 0..count-1",
        inputs=[port("count", kind=N)],
        outputs=[port("array", kind=A)],
    ),
    # Text
    NodeTypeSpec(
        type="TextJoin", title="Join Text", category="Text",
        description="Join multiple texts with separator",
        inputs=[
            port("text1", "text 1", S, required=True),
            port("text2", "text 2", S),
            port("text3", "text 3", S),
            port("separator", kind=S),
        ],
        outputs=[port("out", "result", S)],
    ),
    NodeTypeSpec(
        type="TextSplit", title="Split Text", category="Text",
        description="Split text by delimiter",
        inputs=[port("text", kind=S, required=True), port("delimiter", kind=S)],
        outputs=[port("out", "array", A)],
    ),
    NodeTypeSpec(
        type="TextReplace", title="Replace", category="Text",
        description="Find and replace in text",
        inputs=[
            port("text", kind=S, required=True),
            port("find", kind=S, required=True),
            port("replace", kind=S),
        ],
        outputs=[port("out", "result", S)],
    ),
    NodeTypeSpec(
        type="TextLength", title="Text Length", category="Text",
        description="Get character count of text",
        inputs=[port("text", kind=S, required=True)],
        outputs=[port("out", "length", N)],
    ),
    NodeTypeSpec(
        type="TextCase", title="Change Case", category="Text",
        description="Convert to upper/lower/title case",
        inputs=[port("text", kind=S, required=True)],
        outputs=[port("out", "result", S)],
    ),
    # Data
    NodeTypeSpec(
        type="JSONParse", title="Parse JSON", category="Data",
        description="Parse JSON string to object",
        inputs=[port("json", kind=S, required=True)],
        outputs=[port("out", "object", O)],
    ),
    NodeTypeSpec(
        type="JSONStringify", title="To JSON", category="Data",
        description="Convert object to JSON string",
        inputs=[port("object", required=True)],
        outputs=[port("out", "json", S)],
    ),
    NodeTypeSpec(
        type="GetProperty", title="Get Property", category="Data",
        description="Get property from object by (dotted) key",
        inputs=[port("object", kind=O, required=True), port("key", kind=S, required=True)],
        outputs=[port("out", "value")],
    ),
    NodeTypeSpec(
        type="ArrayGet", title="Get Item", category="Data",
        description="Get item from array by index",
        inputs=[port("array", kind=A, required=True), port("index", kind=N, required=True)],
        outputs=[port("out", "item")],
    ),
    NodeTypeSpec(
        type="ArrayLength", title="Array Length", category="Data",
        description="Get length of array",
        inputs=[port("array", kind=A, required=True)],
        outputs=[port("out", "length", N)],
    ),
    NodeTypeSpec(
        type="CreateArray", title="Create Array", category="Data",
        description="Create array from inputs",
        inputs=[port(f"item{i}", f"item {i}") for i in range(4)],
        outputs=[port("out", "array", A)],
    ),
    NodeTypeSpec(
        type="HTTPRequest", title="HTTP Request", category="Data",
        description="Send an HTTP request",
        inputs=[port("url", kind=S, required=True), port("headers", kind=O), port("body")],
        outputs=[port("response"), port("status", kind=N), port("headers", kind=O)],
    ),
    # Utility
    NodeTypeSpec(
        type="Delay", title="Delay", category="Utility",
        description="Wait for the configured number of seconds",
        inputs=[port("input", required=True), port("seconds", kind=N)],
        outputs=[port("out", "output")],
    ),
    NodeTypeSpec(
        type="Debug", title="Debug", category="Utility",
        description="Log a value, or the errors of failed upstream nodes",
        inputs=[port("input", required=True)],
        outputs=[port("out", "pass")],
        error_resilient=True,
    ),
    NodeTypeSpec(
        type="Comment", title="Note", category="Utility",
        description="Documentation note (no execution)",
    ),
    NodeTypeSpec(
        type="Random", title="Random", category="Utility",
        description="Generate random number",
        inputs=[port("min", kind=N), port("max", kind=N)],
        outputs=[port("out", "value", N)],
    ),
    NodeTypeSpec(
        type="Timestamp", title="Timestamp", category="Utility",
        description="Get current timestamp",
        outputs=[port("ms", "milliseconds", N), port("iso", "ISO string", S)],
    ),
    # Convert
    NodeTypeSpec(
        type="ToString", title="To String", category="Convert",
        description="Convert value to string",
        inputs=[port("value", required=True)],
        outputs=[port("out", "string", S)],
    ),
    NodeTypeSpec(
        type="ToNumber", title="To Number", category="Convert",
        description="Convert value to number",
        inputs=[port("value", required=True)],
        outputs=[port("out", "number", N)],
    ),
    NodeTypeSpec(
        type="ToBoolean", title="To Boolean", category="Convert",
        description="Convert value to boolean",
        inputs=[port("value", required=True)],
        outputs=[port("out", "boolean", B)],
    ),
]


def core_executors(http_transport: httpx.AsyncBaseTransport | None = None) -> dict[str, NodeExecutor]:
    """Executors of the core pack keyed by node type."""
    return {
        "NumberInput": number_input,
        "TextInput": text_input,
        "BooleanInput": boolean_input,
        "Math": math_node,
        "Merge": merge,
        "Display": display,
        "Condition": condition,
        "Compare": compare,
        "Gate": gate,
        "Switch": switch,
        "ForEach": for_each,
        "Range": range_node,
        "TextJoin": text_join,
        "TextSplit": text_split,
        "TextReplace": text_replace,
        "TextLength": text_length,
        "TextCase": text_case,
        "JSONParse": json_parse,
        "JSONStringify": json_stringify,
        "GetProperty": get_property,
        "ArrayGet": array_get,
        "ArrayLength": array_length,
        "CreateArray": create_array,
        "HTTPRequest": HTTPRequestExecutor(http_transport),
        "Delay": delay,
        "Debug": debug,
        "Comment": comment,
        "Random": random_node,
        "Timestamp": timestamp,
        "ToString": to_string_node,
        "ToNumber": to_number_node,
        "ToBoolean": to_boolean_node,
    }


def register_core_pack(
    executors: ExecutorRegistry,
    node_types: NodeTypeRegistry,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    for spec in CORE_NODE_TYPES:
        node_types.register(spec)
    for node_type, executor in core_executors(http_transport).items():
        executors.register(node_type, executor)


def create_default_registries(
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> tuple[ExecutorRegistry, NodeTypeRegistry]:
    """
    Fresh executor and node type registries holding the core pack.

    Args:
        http_transport: Optional httpx transport for the HTTPRequest node
            (e.g. ``httpx.MockTransport`` in tests)
    """
    executors = ExecutorRegistry()
    node_types = NodeTypeRegistry()
    register_core_pack(executors, node_types, http_transport)
    return executors, node_types
