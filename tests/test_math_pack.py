"""Tests for the Mathematician pack and its expression evaluator."""

import math

import pytest

from flowforge.graph.types import ExecutionContext
from flowforge.packs.math_pack import (
    MATH_EXECUTORS,
    MAX_EXPRESSION_LENGTH,
    ExpressionError,
    create_math_pack,
    evaluate_expression,
)


async def run(node_type, inputs=None, config=None):
    ctx = ExecutionContext(node_id="m", node_type=node_type, config=config or {}, inputs=inputs or {})
    result = await MATH_EXECUTORS[node_type](ctx)
    return result.outputs


class TestExpressions:
    @pytest.mark.parametrize(
        "expression,expected",
        [
            ("2 + 3 * 4", 14),
            ("(2 + 3) * 4", 20),
            ("2^3^2", 512),
            ("-3 + 5", 2),
            ("10 % 4", 2),
            ("7 / 2", 3.5),
            ("sqrt(16) + abs(-2)", 6),
            ("max(1, 5, 3) - min(4, 2)", 3),
            ("round(2.5)", 3),
            ("floor(2.7) + ceil(2.1)", 5),
            (".5 * 4", 2),
        ],
    )
    def test_arithmetic(self, expression, expected):
        assert evaluate_expression(expression) == pytest.approx(expected)

    def test_constants_and_variables(self):
        assert evaluate_expression("pi") == pytest.approx(math.pi)
        assert evaluate_expression("E") == pytest.approx(math.e)
        assert evaluate_expression("x * y + 1", {"x": 3, "y": 4}) == 13

    @pytest.mark.parametrize(
        "expression,message",
        [
            ("1 / 0", "Division by zero"),
            ("5 % 0", "Modulo by zero"),
            ("foo + 1", "Unknown variable: foo"),
            ("nope(1)", "Unknown function: nope"),
            ("(1 + 2", "Missing closing parenthesis"),
            ("1 + * 2", "Unexpected character"),
            ("1 2", "Unexpected character"),
            ("sqrt(-1)", "sqrt"),
        ],
    )
    def test_errors(self, expression, message):
        with pytest.raises(ExpressionError, match=message):
            evaluate_expression(expression)

    def test_length_and_nesting_limits(self):
        with pytest.raises(ExpressionError, match="too long"):
            evaluate_expression("1+" * MAX_EXPRESSION_LENGTH + "1")
        with pytest.raises(ExpressionError, match="too deeply nested"):
            evaluate_expression("(" * 60 + "1" + ")" * 60)

    def test_long_sign_and_power_chains(self):
        assert evaluate_expression("-" * 990 + "1") == 1
        assert evaluate_expression("-" * 991 + "1") == -1
        assert evaluate_expression("-2^2") == 4
        assert evaluate_expression("2^-1") == 0.5
        assert evaluate_expression("^".join(["1"] * 450)) == 1
        with pytest.raises(ExpressionError, match="Cannot raise"):
            evaluate_expression("^".join(["9"] * 400))

    def test_expression_errors_are_not_retried(self):
        assert ExpressionError("x").retryable is False


class TestExecutors:
    @pytest.mark.asyncio
    async def test_basic_functions(self):
        assert (await run("math:Power", {"base": 2, "exp": 3}))["out"] == 8
        assert (await run("math:Power", {"base": 3}))["out"] == 9
        assert (await run("math:Sqrt", {"x": 9}))["out"] == 3
        assert (await run("math:Abs", {"x": -4}))["out"] == 4
        assert (await run("math:Round", {"x": 2.5}))["out"] == 3
        assert (await run("math:Round", {"x": -2.5}))["out"] == -2
        assert (await run("math:Floor", {"x": "2.9"}))["out"] == 2
        assert (await run("math:Exp", {"x": 0}))["out"] == 1
        assert (await run("math:Modulo", {"a": 7, "b": 3}))["out"] == 1

    @pytest.mark.asyncio
    async def test_domain_errors(self):
        with pytest.raises(ExpressionError):
            await run("math:Log", {"x": 0})
        with pytest.raises(ExpressionError):
            await run("math:Sqrt", {"x": -1})
        with pytest.raises(ExpressionError, match="Modulo by zero"):
            await run("math:Modulo", {"a": 1, "b": 0})

    @pytest.mark.asyncio
    async def test_trigonometry(self):
        assert (await run("math:Sin", {"angle": math.pi / 2}))["out"] == pytest.approx(1)
        assert (await run("math:Cos", {"angle": 0}))["out"] == pytest.approx(1)
        assert (await run("math:Atan2", {"y": 1, "x": 1}))["out"] == pytest.approx(math.pi / 4)

    @pytest.mark.asyncio
    async def test_statistics(self):
        values = {"array": [2, 4, 4, 4, 5, 5, 7, 9]}
        assert (await run("math:Mean", values))["out"] == 5
        assert (await run("math:Median", values))["out"] == 4.5
        assert (await run("math:StdDev", values))["out"] == pytest.approx(2)
        assert (await run("math:Sum", values))["out"] == 40
        assert await run("math:MinMax", values) == {"min": 2, "max": 9}

    @pytest.mark.asyncio
    async def test_statistics_accept_comma_separated_text(self):
        assert (await run("math:Mean", {"array": "1, 2, x, 3"}))["out"] == 2

    @pytest.mark.asyncio
    async def test_empty_arrays(self):
        assert (await run("math:Sum", {"array": []}))["out"] == 0
        with pytest.raises(ExpressionError, match="Empty array"):
            await run("math:Mean", {"array": []})
        with pytest.raises(ExpressionError, match="Empty array"):
            await run("math:MinMax", {})

    @pytest.mark.asyncio
    async def test_constants(self):
        assert (await run("math:Pi"))["out"] == math.pi
        assert (await run("math:E"))["out"] == math.e

    @pytest.mark.asyncio
    async def test_expression_node(self):
        outputs = await run("math:Expression", {"expression": "a * 2", "vars": {"a": "21"}})
        assert outputs["out"] == 42

        outputs = await run("math:Expression", config={"expression": "1 + 1"})
        assert outputs["out"] == 2


def test_pack_definition():
    pack = create_math_pack()

    assert pack.manifest.id == "math"
    assert pack.manifest.kind == "builtin"
    types = [spec.type for spec in pack.node_types]
    assert all(t.startswith("math:") for t in types)
    assert set(types) == set(pack.executors)
