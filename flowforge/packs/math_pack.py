"""
Mathematician pack - optional ``math:*`` node types.

Basic functions, trigonometry, statistics over arrays, constants and a
small arithmetic expression evaluator. Enable it through the PackRegistry:

    packs = PackRegistry(executors, node_types)
    packs.register_builtin_pack(create_math_pack())
    packs.enable_pack("math")
"""

import math
import re
import statistics
from collections.abc import Callable
from typing import Any

from flowforge.graph.errors import ExecutorError
from flowforge.graph.node import NodeTypeSpec
from flowforge.graph.types import ExecutionContext, ExecutionResult
from flowforge.graph.values import DataKind, to_number, to_string
from flowforge.packs.core import port
from flowforge.packs.registry import BuiltinPack, PackManifest

MAX_EXPRESSION_LENGTH = 1000
MAX_EXPRESSION_DEPTH = 50

# ---------------------------------------------------------------------------
# Expression evaluator
# ---------------------------------------------------------------------------

def _round_half_up(x: float) -> int:
    return math.floor(x + 0.5)


def _pow(base: float, exponent: float) -> float:
    try:
        return math.pow(base, exponent)
    except (ValueError, OverflowError) as e:
        raise ExpressionError(f"Cannot raise {base:g} to {exponent:g}: {e}") from e


_NUMBER = re.compile(r"\d+\.?\d*|\.\d+")
_IDENTIFIER = re.compile(r"[A-Za-z_]\w*")

_FUNCTIONS: dict[str, Callable[..., float]] = {
    "sqrt": math.sqrt,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "log": math.log,
    "abs": abs,
    "floor": math.floor,
    "ceil": math.ceil,
    "round": _round_half_up,
    "min": min,
    "max": max,
}


class ExpressionError(ExecutorError):
    """An arithmetic expression could not be evaluated."""

    retryable = False


class _Parser:
    """
    Recursive-descent evaluator for ``+ - * / % ^``, parentheses, unary
    signs, the constants ``pi`` and ``e``, calls to a fixed set of
    functions and caller-supplied variables. ``^`` is right-associative.
    """

    def __init__(self, expression: str, variables: dict[str, float]):
        self.expr = expression
        self.pos = 0
        self.variables = variables
        self.depth = 0

    def evaluate(self) -> float:
        value = self.expression()
        self.skip_whitespace()
        if self.pos < len(self.expr):
            raise ExpressionError(
                f"Unexpected character at position {self.pos}: '{self.expr[self.pos]}'"
            )
        return value

    def peek(self) -> str:
        self.skip_whitespace()
        return self.expr[self.pos] if self.pos < len(self.expr) else ""

    def skip_whitespace(self) -> None:
        while self.pos < len(self.expr) and self.expr[self.pos].isspace():
            self.pos += 1

    def expression(self) -> float:
        self.depth += 1
        if self.depth > MAX_EXPRESSION_DEPTH:
            raise ExpressionError("Expression too deeply nested")
        value = self.add_sub()
        self.depth -= 1
        return value

    def add_sub(self) -> float:
        left = self.mul_div()
        while self.peek() in ("+", "-"):
            op = self.expr[self.pos]
            self.pos += 1
            right = self.mul_div()
            left = left + right if op == "+" else left - right
        return left

    def mul_div(self) -> float:
        left = self.power()
        while self.peek() in ("*", "/", "%"):
            op = self.expr[self.pos]
            self.pos += 1
            right = self.power()
            if op == "*":
                left = left * right
            elif right == 0:
                raise ExpressionError("Division by zero" if op == "/" else "Modulo by zero")
            elif op == "/":
                left = left / right
            else:
                left = math.fmod(left, right)
        return left

    def power(self) -> float:
        operands = [self.unary()]
        while self.peek() == "^":
            self.pos += 1
            operands.append(self.unary())
        # Right-associative: a^b^c == a^(b^c)
        value = operands.pop()
        while operands:
            value = _pow(operands.pop(), value)
        return value

    def unary(self) -> float:
        negate = False
        while self.peek() in ("-", "+"):
            if self.expr[self.pos] == "-":
                negate = not negate
            self.pos += 1
        value = self.atom()
        return -value if negate else value

    def atom(self) -> float:
        char = self.peek()

        if char == "(":
            self.pos += 1
            value = self.expression()
            if self.peek() != ")":
                raise ExpressionError("Missing closing parenthesis")
            self.pos += 1
            return value

        number = _NUMBER.match(self.expr, self.pos)
        if number:
            self.pos = number.end()
            return float(number.group())

        identifier = _IDENTIFIER.match(self.expr, self.pos)
        if identifier:
            self.pos = identifier.end()
            return self.name(identifier.group())

        raise ExpressionError(
            f"Unexpected character at position {self.pos}: '{char or 'EOF'}'"
        )

    def name(self, raw: str) -> float:
        name = raw.lower()
        if name == "pi":
            return math.pi
        if name == "e":
            return math.e

        if self.peek() == "(":
            self.pos += 1
            args: list[float] = []
            if self.peek() != ")":
                args.append(self.expression())
                while self.peek() == ",":
                    self.pos += 1
                    args.append(self.expression())
            if self.peek() != ")":
                raise ExpressionError(f"Missing closing parenthesis for function {name}")
            self.pos += 1
            return self.call(name, args)

        if raw in self.variables:
            return self.variables[raw]
        raise ExpressionError(f"Unknown variable: {raw}")

    def call(self, name: str, args: list[float]) -> float:
        function = _FUNCTIONS.get(name)
        if function is None:
            raise ExpressionError(f"Unknown function: {name}")
        if name in ("min", "max"):
            if not args:
                raise ExpressionError(f"{name}() needs at least one argument")
            return function(*args)
        try:
            return float(function(args[0] if args else 0.0))
        except ValueError as e:
            raise ExpressionError(f"{name}(): {e}") from e


def evaluate_expression(expression: str, variables: dict[str, float] | None = None) -> float:
    """Evaluate an arithmetic expression with optional named variables."""
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError(f"Expression too long (max {MAX_EXPRESSION_LENGTH} characters)")
    return _Parser(expression, variables or {}).evaluate()


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def _numbers(value: Any) -> list[float]:
    """Numbers from an array, or from comma-separated text."""
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list | tuple):
        return []
    numbers = []
    for item in value:
        try:
            numbers.append(to_number(item.strip() if isinstance(item, str) else item, strict=True))
        except ValueError:
            continue
    return numbers


def _unary(function: Callable[[float], float], port_id: str = "x"):
    async def execute(ctx: ExecutionContext) -> ExecutionResult:
        x = to_number(ctx.inputs.get(port_id, 0))
        try:
            return ExecutionResult(outputs={"out": function(x)})
        except (ValueError, OverflowError) as e:
            raise ExpressionError(str(e)) from e

    return execute


def _statistic(function: Callable[[list[float]], float], allow_empty: bool = False):
    async def execute(ctx: ExecutionContext) -> ExecutionResult:
        numbers = _numbers(ctx.inputs.get("array"))
        if not numbers and not allow_empty:
            raise ExpressionError("Empty array")
        return ExecutionResult(outputs={"out": function(numbers)})

    return execute


def _constant(value: float):
    async def execute(ctx: ExecutionContext) -> ExecutionResult:
        return ExecutionResult(outputs={"out": value})

    return execute


def _log(x: float) -> float:
    if x <= 0:
        raise ValueError("Log of non-positive number")
    return math.log(x)


async def power(ctx: ExecutionContext) -> ExecutionResult:
    base = to_number(ctx.inputs.get("base", 0))
    exponent = to_number(ctx.inputs.get("exp", 2))
    return ExecutionResult(outputs={"out": _pow(base, exponent)})


async def modulo(ctx: ExecutionContext) -> ExecutionResult:
    a = to_number(ctx.inputs.get("a", 0))
    b = to_number(ctx.inputs.get("b", 1))
    if b == 0:
        raise ExpressionError("Modulo by zero")
    return ExecutionResult(outputs={"out": math.fmod(a, b)})


async def atan2(ctx: ExecutionContext) -> ExecutionResult:
    y = to_number(ctx.inputs.get("y", 0))
    x = to_number(ctx.inputs.get("x", 0))
    return ExecutionResult(outputs={"out": math.atan2(y, x)})


async def min_max(ctx: ExecutionContext) -> ExecutionResult:
    numbers = _numbers(ctx.inputs.get("array"))
    if not numbers:
        raise ExpressionError("Empty array")
    return ExecutionResult(outputs={"min": min(numbers), "max": max(numbers)})


async def expression(ctx: ExecutionContext) -> ExecutionResult:
    text = to_string(ctx.inputs.get("expression", ctx.config.get("expression", "0")))
    raw_vars = ctx.inputs.get("vars", ctx.config.get("vars")) or {}
    variables = {}
    if isinstance(raw_vars, dict):
        variables = {name: to_number(value) for name, value in raw_vars.items()}
    return ExecutionResult(outputs={"out": evaluate_expression(text, variables)})


# ---------------------------------------------------------------------------
# Pack
# ---------------------------------------------------------------------------

MATH_EXECUTORS = {
    "math:Power": power,
    "math:Sqrt": _unary(math.sqrt),
    "math:Abs": _unary(abs),
    "math:Floor": _unary(math.floor),
    "math:Ceil": _unary(math.ceil),
    "math:Round": _unary(_round_half_up),
    "math:Log": _unary(_log),
    "math:Exp": _unary(math.exp),
    "math:Modulo": modulo,
    "math:Sin": _unary(math.sin, "angle"),
    "math:Cos": _unary(math.cos, "angle"),
    "math:Tan": _unary(math.tan, "angle"),
    "math:Atan2": atan2,
    "math:Mean": _statistic(statistics.fmean),
    "math:Median": _statistic(statistics.median),
    "math:Sum": _statistic(math.fsum, allow_empty=True),
    "math:StdDev": _statistic(statistics.pstdev),
    "math:MinMax": min_max,
    "math:Pi": _constant(math.pi),
    "math:E": _constant(math.e),
    "math:Expression": expression,
}


def _math_node(
    node_type: str, title: str, category: str, inputs: list[tuple[str, DataKind]], outputs=None
) -> NodeTypeSpec:
    return NodeTypeSpec(
        type=node_type,
        title=title,
        category=category,
        description=f"{title} operation",
        inputs=[port(port_id, kind=kind) for port_id, kind in inputs],
        outputs=outputs or [port("out", "result", DataKind.NUMBER)],
    )


def create_math_pack() -> BuiltinPack:
    N, A = DataKind.NUMBER, DataKind.ARRAY
    node_types = [
        _math_node("math:Power", "Power", "Math/Basic", [("base", N), ("exp", N)]),
        _math_node("math:Sqrt", "Sqrt", "Math/Basic", [("x", N)]),
        _math_node("math:Abs", "Abs", "Math/Basic", [("x", N)]),
        _math_node("math:Floor", "Floor", "Math/Basic", [("x", N)]),
        _math_node("math:Ceil", "Ceil", "Math/Basic", [("x", N)]),
        _math_node("math:Round", "Round", "Math/Basic", [("x", N)]),
        _math_node("math:Log", "Log", "Math/Basic", [("x", N)]),
        _math_node("math:Exp", "Exp", "Math/Basic", [("x", N)]),
        _math_node("math:Modulo", "Modulo", "Math/Basic", [("a", N), ("b", N)]),
        _math_node("math:Sin", "Sin", "Math/Trig", [("angle", N)]),
        _math_node("math:Cos", "Cos", "Math/Trig", [("angle", N)]),
        _math_node("math:Tan", "Tan", "Math/Trig", [("angle", N)]),
        _math_node("math:Atan2", "Atan2", "Math/Trig", [("y", N), ("x", N)]),
        _math_node("math:Mean", "Mean", "Math/Stats", [("array", A)]),
        _math_node("math:Median", "Median", "Math/Stats", [("array", A)]),
        _math_node("math:Sum", "Sum", "Math/Stats", [("array", A)]),
        _math_node("math:StdDev", "Std Dev", "Math/Stats", [("array", A)]),
        _math_node(
            "math:MinMax", "Min/Max", "Math/Stats", [("array", A)],
            outputs=[port("min", kind=N), port("max", kind=N)],
        ),
        _math_node("math:Pi", "Pi", "Math/Const", [], outputs=[port("out", "value", N)]),
        _math_node("math:E", "E", "Math/Const", [], outputs=[port("out", "value", N)]),
        _math_node(
            "math:Expression", "Expression", "Math/Basic",
            [("expression", DataKind.STRING), ("vars", DataKind.OBJECT)],
        ),
    ]

    return BuiltinPack(
        manifest=PackManifest(
            id="math",
            name="Mathematician Pack",
            description="Math functions: trig, stats, expressions, and constants",
            version="1.0.0",
            author="FlowForge",
            category="Math",
            kind="builtin",
        ),
        node_types=node_types,
        executors=dict(MATH_EXECUTORS),
    )
