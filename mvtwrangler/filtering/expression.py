"""Filter expressions: operators, runtime values and compilation from JSON."""

from __future__ import annotations

import json
import math
import re
import struct
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

from mvtwrangler.mvt import TileValue

_I64_MIN = -(1 << 63)
_I64_MAX = (1 << 63) - 1


class ExpressionError(ValueError):
    """Raised when a filter expression cannot be compiled."""


class Operator(Enum):
    """Operators allowed at the head of an expression array."""

    EQUAL = "=="
    NOT_EQUAL = "!="
    LESS_THAN = "<"
    GREATER_THAN = ">"
    LESS_THAN_OR_EQUAL = "<="
    GREATER_THAN_OR_EQUAL = ">="
    ANY = "any"
    ALL = "all"
    NONE = "none"
    NOT = "not"
    IN = "in"
    STARTS_WITH = "starts-with"
    ENDS_WITH = "ends-with"
    REGEX_MATCH = "regex-match"
    REGEX_CAPTURE = "regex-capture"
    BOOLEAN = "boolean"
    LITERAL = "literal"
    TAG = "tag"
    KEY = "key"
    TYPE = "type"


_OPERATOR_ALIASES = {"!": Operator.NOT}


def parse_operator(name: str) -> Operator:
    """Look up an operator by its expression name."""
    if name in _OPERATOR_ALIASES:
        return _OPERATOR_ALIASES[name]
    try:
        return Operator(name)
    except ValueError:
        raise ExpressionError(f"Unknown operator: {name}") from None


class ValueKind(Enum):
    STRING = "string"
    NUMBER = "number"
    FLOAT = "float"
    BOOLEAN = "boolean"
    NULL = "null"
    ARRAY = "array"


@dataclass(frozen=True)
class ExpressionValue:
    """A runtime value. Floats keep their textual form so that they hash."""

    kind: ValueKind
    value: Any = None

    @classmethod
    def of_string(cls, text: str) -> ExpressionValue:
        return cls(ValueKind.STRING, text)

    @classmethod
    def of_number(cls, number: int) -> ExpressionValue:
        return cls(ValueKind.NUMBER, number)

    @classmethod
    def of_float(cls, text: str) -> ExpressionValue:
        return cls(ValueKind.FLOAT, text)

    @classmethod
    def of_bool(cls, flag: bool) -> ExpressionValue:
        return cls(ValueKind.BOOLEAN, bool(flag))

    @classmethod
    def null(cls) -> ExpressionValue:
        return cls(ValueKind.NULL, None)

    @classmethod
    def of_array(cls, items) -> ExpressionValue:
        return cls(ValueKind.ARRAY, tuple(items))

    def to_bool(self) -> bool:
        """Truthiness used by the logical operators."""
        if self.kind is ValueKind.BOOLEAN:
            return self.value
        if self.kind is ValueKind.STRING:
            return self.value != ""
        if self.kind is ValueKind.NUMBER:
            return self.value != 0
        if self.kind is ValueKind.FLOAT:
            return self.value not in ("0", "0.0")
        if self.kind is ValueKind.ARRAY:
            return len(self.value) > 0
        return False

    def __str__(self) -> str:
        if self.kind is ValueKind.BOOLEAN:
            return "true" if self.value else "false"
        if self.kind is ValueKind.NULL:
            return "null"
        if self.kind is ValueKind.ARRAY:
            return "[" + ", ".join(str(item) for item in self.value) + "]"
        return str(self.value)


def _json_float_text(number: float) -> str:
    """Shortest round-trip text of a JSON float, exponent without padding."""
    if math.isnan(number):
        return "NaN"
    if math.isinf(number):
        return "inf" if number > 0 else "-inf"
    text = repr(number)
    if "e" in text:
        mantissa, exponent = text.split("e")
        text = f"{mantissa}e{int(exponent)}"
    return text


def _plain_float_text(number: float, single: bool = False) -> str:
    """Shortest round-trip decimal text without exponent, integers without '.0'."""
    if math.isnan(number):
        return "NaN"
    if math.isinf(number):
        return "inf" if number > 0 else "-inf"
    text = repr(number)
    if single:
        try:
            target = struct.unpack("<f", struct.pack("<f", number))[0]
        except OverflowError:
            target = None
        if target is not None:
            for precision in range(1, 18):
                candidate = f"{target:.{precision}g}"
                if struct.unpack("<f", struct.pack("<f", float(candidate)))[0] == target:
                    text = candidate
                    break
    plain = format(Decimal(text), "f")
    if "." in plain:
        plain = plain.rstrip("0").rstrip(".")
    return plain


def _number_from_json(number: int | float) -> ExpressionValue:
    if isinstance(number, int) and _I64_MIN <= number <= _I64_MAX:
        return ExpressionValue.of_number(number)
    if isinstance(number, int):
        return ExpressionValue.of_float(str(number))
    return ExpressionValue.of_float(_json_float_text(number))


def value_from_json(value: Any) -> ExpressionValue:
    """Convert a decoded JSON value into an ExpressionValue."""
    if isinstance(value, str):
        return ExpressionValue.of_string(value)
    if isinstance(value, bool):
        return ExpressionValue.of_bool(value)
    if isinstance(value, (int, float)):
        return _number_from_json(value)
    if value is None:
        return ExpressionValue.null()
    if isinstance(value, (list, tuple)):
        return ExpressionValue.of_array(value_from_json(item) for item in value)
    return ExpressionValue.of_string(
        json.dumps(value, separators=(",", ":"), sort_keys=True, ensure_ascii=False)
    )


def value_from_mvt(value: TileValue) -> ExpressionValue:
    """Convert a vector tile tag value into an ExpressionValue."""
    if value.string_value is not None:
        return ExpressionValue.of_string(value.string_value)
    if value.int_value is not None:
        return ExpressionValue.of_number(value.int_value)
    if value.uint_value is not None:
        unsigned = value.uint_value & ((1 << 64) - 1)
        return ExpressionValue.of_number(unsigned - (1 << 64) if unsigned > _I64_MAX else unsigned)
    if value.sint_value is not None:
        return ExpressionValue.of_number(value.sint_value)
    if value.float_value is not None:
        return ExpressionValue.of_float(_plain_float_text(value.float_value, single=True))
    if value.double_value is not None:
        return ExpressionValue.of_float(_plain_float_text(value.double_value))
    if value.bool_value is not None:
        return ExpressionValue.of_bool(value.bool_value)
    return ExpressionValue.null()


@dataclass(frozen=True)
class CompiledExpression:
    """A node of a compiled expression tree.

    ``operands`` holds sub-expressions; ``value`` the literal of LITERAL;
    ``values`` the set of IN; ``text`` the tag name or string affix;
    ``pattern`` and ``group`` the regular expression parts.
    """

    op: Operator
    operands: tuple[CompiledExpression, ...] = ()
    value: ExpressionValue | None = None
    values: frozenset = frozenset()
    text: str | None = None
    pattern: re.Pattern | None = None
    group: int = 0


_COMPARISONS = {
    Operator.EQUAL,
    Operator.NOT_EQUAL,
    Operator.LESS_THAN,
    Operator.GREATER_THAN,
    Operator.LESS_THAN_OR_EQUAL,
    Operator.GREATER_THAN_OR_EQUAL,
}
_VARIADIC = {Operator.ANY, Operator.ALL, Operator.NONE}


def _ensure_arg_count(args: list, expected: int) -> None:
    if len(args) != expected:
        raise ExpressionError(f"Expected {expected} arguments, got {len(args)}")


def _ensure_min_arg_count(args: list, minimum: int) -> None:
    if len(args) < minimum:
        raise ExpressionError(f"Expected at least {minimum} arguments, got {len(args)}")


def _require_str(value: Any, message: str) -> str:
    if not isinstance(value, str):
        raise ExpressionError(message)
    return value


def _compile_regex(pattern: str) -> re.Pattern:
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ExpressionError(f"Invalid regex pattern '{pattern}': {exc}") from exc


def compile_expression(expr: Any) -> CompiledExpression:
    """Compile a decoded JSON expression into a CompiledExpression tree."""
    if isinstance(expr, (list, tuple)):
        if not expr:
            raise ExpressionError("Expression array cannot be empty")
        head, *args = expr
        if not isinstance(head, str):
            raise ExpressionError("First element must be operator string")
        return _compile_operator(parse_operator(head), args)
    if isinstance(expr, dict):
        raise ExpressionError("Object expressions are not supported")
    if isinstance(expr, str):
        return CompiledExpression(Operator.LITERAL, value=ExpressionValue.of_string(expr))
    if isinstance(expr, bool):
        return CompiledExpression(Operator.LITERAL, value=ExpressionValue.of_bool(expr))
    if isinstance(expr, (int, float)):
        return CompiledExpression(Operator.LITERAL, value=_number_from_json(expr))
    if expr is None:
        return CompiledExpression(Operator.LITERAL, value=ExpressionValue.null())
    raise ExpressionError(f"Unsupported expression value: {expr!r}")


def _compile_operator(op: Operator, args: list) -> CompiledExpression:
    if op in _COMPARISONS:
        _ensure_arg_count(args, 2)
        return CompiledExpression(op, operands=tuple(compile_expression(a) for a in args))
    if op in _VARIADIC:
        return CompiledExpression(op, operands=tuple(compile_expression(a) for a in args))
    if op in (Operator.NOT, Operator.BOOLEAN):
        _ensure_arg_count(args, 1)
        return CompiledExpression(op, operands=(compile_expression(args[0]),))
    if op is Operator.IN:
        _ensure_arg_count(args, 2)
        subject = compile_expression(args[0])
        values = compile_expression(args[1])
        if values.op is not Operator.LITERAL or values.value.kind is not ValueKind.ARRAY:
            raise ExpressionError("In operator requires an array of values")
        return CompiledExpression(op, operands=(subject,), values=frozenset(values.value.value))
    if op in (Operator.STARTS_WITH, Operator.ENDS_WITH):
        _ensure_arg_count(args, 2)
        subject = compile_expression(args[0])
        name = "StartsWith" if op is Operator.STARTS_WITH else "EndsWith"
        affix = _require_str(args[1], f"{name} requires string argument")
        return CompiledExpression(op, operands=(subject,), text=affix)
    if op is Operator.REGEX_MATCH:
        _ensure_arg_count(args, 2)
        subject = compile_expression(args[0])
        pattern = _require_str(args[1], "RegexMatch requires string pattern")
        return CompiledExpression(op, operands=(subject,), pattern=_compile_regex(pattern))
    if op is Operator.REGEX_CAPTURE:
        _ensure_min_arg_count(args, 3)
        subject = compile_expression(args[0])
        pattern = _require_str(args[1], "RegexCapture requires string pattern")
        group = args[2]
        if isinstance(group, bool) or not isinstance(group, int) or group < 0:
            raise ExpressionError("RegexCapture requires numeric group index")
        return CompiledExpression(
            op, operands=(subject,), pattern=_compile_regex(pattern), group=group
        )
    if op is Operator.LITERAL:
        _ensure_arg_count(args, 1)
        return CompiledExpression(op, value=value_from_json(args[0]))
    if op is Operator.TAG:
        _ensure_arg_count(args, 1)
        name = _require_str(args[0], "Tag operator requires string argument")
        return CompiledExpression(op, text=name)
    _ensure_arg_count(args, 0)
    return CompiledExpression(op)