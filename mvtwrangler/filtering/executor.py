"""Evaluation of compiled filter expressions against feature data."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Callable

from mvtwrangler.filtering.expression import (
    CompiledExpression,
    ExpressionValue,
    Operator,
    ValueKind,
    value_from_mvt,
)
from mvtwrangler.mvt import TileValue


@dataclass(frozen=True)
class EvaluationContext:
    """The feature (and optionally the tag) an expression is evaluated against."""

    layer_name: str
    properties: dict[str, TileValue] = field(default_factory=dict)
    current_key: str | None = None
    geometry_type: str | None = None

    def with_current_key(self, key: str) -> EvaluationContext:
        """Return a copy of the context with the tag key being processed set."""
        return replace(self, current_key=key)

    def with_geometry_type(self, geometry_type: str) -> EvaluationContext:
        """Return a copy of the context with the feature geometry type set."""
        return replace(self, geometry_type=geometry_type)


def _parse_float(text: str) -> float:
    if text != text.strip() or "_" in text:
        return 0.0
    try:
        return float(text)
    except ValueError:
        return 0.0


def _cmp(a, b) -> int:
    return (a > b) - (a < b)


def _cmp_floats(a: float, b: float) -> int:
    if math.isnan(a) or math.isnan(b):
        return 0
    return _cmp(a, b)


def compare_values(left: ExpressionValue, right: ExpressionValue) -> int:
    """Order two values: negative, zero or positive, with type coercion."""
    lk, rk = left.kind, right.kind
    if lk is ValueKind.NULL and rk is ValueKind.NULL:
        return 0
    if lk is ValueKind.NULL:
        return -1
    if rk is ValueKind.NULL:
        return 1
    if lk is ValueKind.BOOLEAN and rk is ValueKind.BOOLEAN:
        return _cmp(left.value, right.value)
    if lk is ValueKind.NUMBER and rk is ValueKind.NUMBER:
        return _cmp(left.value, right.value)
    if lk is ValueKind.FLOAT and rk is ValueKind.FLOAT:
        return _cmp_floats(_parse_float(left.value), _parse_float(right.value))
    if lk is ValueKind.NUMBER and rk is ValueKind.FLOAT:
        return _cmp_floats(float(left.value), _parse_float(right.value))
    if lk is ValueKind.FLOAT and rk is ValueKind.NUMBER:
        return _cmp_floats(_parse_float(left.value), float(right.value))
    if lk is ValueKind.STRING and rk is ValueKind.STRING:
        return _cmp(left.value, right.value)
    return _cmp(str(left), str(right))


_COMPARATORS: dict[Operator, Callable[[int], bool]] = {
    Operator.EQUAL: lambda c: c == 0,
    Operator.NOT_EQUAL: lambda c: c != 0,
    Operator.LESS_THAN: lambda c: c < 0,
    Operator.GREATER_THAN: lambda c: c > 0,
    Operator.LESS_THAN_OR_EQUAL: lambda c: c <= 0,
    Operator.GREATER_THAN_OR_EQUAL: lambda c: c >= 0,
}


def _regex_capture(expr: CompiledExpression, text: str) -> ExpressionValue:
    match = expr.pattern.search(text)
    if match is None:
        return ExpressionValue.null()
    try:
        group = match.group(expr.group)
    except IndexError:
        return ExpressionValue.null()
    if group is None:
        return ExpressionValue.null()
    return ExpressionValue.of_string(group)


def evaluate(expr: CompiledExpression, context: EvaluationContext) -> ExpressionValue:
    """Evaluate a compiled expression in the given context."""
    op = expr.op
    comparator = _COMPARATORS.get(op)
    if comparator is not None:
        left, right = (evaluate(operand, context) for operand in expr.operands)
        return ExpressionValue.of_bool(comparator(compare_values(left, right)))

    if op is Operator.ANY:
        return ExpressionValue.of_bool(
            any(evaluate(e, context).to_bool() for e in expr.operands)
        )
    if op is Operator.ALL:
        return ExpressionValue.of_bool(
            all(evaluate(e, context).to_bool() for e in expr.operands)
        )
    if op is Operator.NONE:
        return ExpressionValue.of_bool(
            not any(evaluate(e, context).to_bool() for e in expr.operands)
        )
    if op is Operator.NOT:
        return ExpressionValue.of_bool(not evaluate(expr.operands[0], context).to_bool())
    if op is Operator.BOOLEAN:
        return ExpressionValue.of_bool(evaluate(expr.operands[0], context).to_bool())

    if op is Operator.IN:
        return ExpressionValue.of_bool(evaluate(expr.operands[0], context) in expr.values)

    if op is Operator.STARTS_WITH:
        return ExpressionValue.of_bool(
            str(evaluate(expr.operands[0], context)).startswith(expr.text)
        )
    if op is Operator.ENDS_WITH:
        return ExpressionValue.of_bool(
            str(evaluate(expr.operands[0], context)).endswith(expr.text)
        )
    if op is Operator.REGEX_MATCH:
        text = str(evaluate(expr.operands[0], context))
        return ExpressionValue.of_bool(expr.pattern.search(text) is not None)
    if op is Operator.REGEX_CAPTURE:
        return _regex_capture(expr, str(evaluate(expr.operands[0], context)))

    if op is Operator.LITERAL:
        return expr.value
    if op is Operator.TAG:
        value = context.properties.get(expr.text)
        return ExpressionValue.null() if value is None else value_from_mvt(value)
    if op is Operator.KEY:
        if context.current_key is None:
            return ExpressionValue.null()
        return ExpressionValue.of_string(context.current_key)
    if op is Operator.TYPE:
        if context.geometry_type is None:
            return ExpressionValue.null()
        return ExpressionValue.of_string(context.geometry_type)
    raise ValueError(f"Cannot evaluate operator {op}")


def evaluate_bool(expr: CompiledExpression, context: EvaluationContext) -> bool:
    """Evaluate an expression and reduce the result to a boolean."""
    return evaluate(expr, context).to_bool()