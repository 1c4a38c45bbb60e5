import pytest

from mvtwrangler.filtering.expression import (
    CompiledExpression,
    ExpressionError,
    ExpressionValue,
    Operator,
    ValueKind,
    compile_expression,
    parse_operator,
    value_from_json,
    value_from_mvt,
)
from mvtwrangler.mvt import TileValue


def test_compile_simple_equality():
    compiled = compile_expression(["==", ["tag", "kind"], "park"])
    assert compiled.op is Operator.EQUAL
    assert compiled.operands[0] == CompiledExpression(Operator.TAG, text="kind")
    assert compiled.operands[1].value == ExpressionValue.of_string("park")


def test_compile_logical_any():
    compiled = compile_expression(
        ["any", ["==", ["tag", "kind"], "park"], ["==", ["tag", "kind"], "school"]]
    )
    assert compiled.op is Operator.ANY
    assert len(compiled.operands) == 2


def test_compile_membership_in():
    compiled = compile_expression(
        ["in", ["tag", "kind"], ["literal", ["park", "school", "hospital"]]]
    )
    assert compiled.op is Operator.IN
    assert len(compiled.values) == 3
    assert ExpressionValue.of_string("park") in compiled.values


def test_compile_regex_match():
    compiled = compile_expression(["regex-match", ["key"], "^name:.*"])
    assert compiled.op is Operator.REGEX_MATCH
    assert compiled.pattern.search("name:en") is not None


def test_invalid_regex_pattern():
    with pytest.raises(ExpressionError):
        compile_expression(["regex-match", ["key"], "["])


def test_expression_value_conversions():
    value = ExpressionValue.of_string("test")
    assert str(value) == "test"
    assert value.to_bool() is True
    assert ExpressionValue.of_number(0).to_bool() is False
    assert ExpressionValue.of_bool(True).to_bool() is True


@pytest.mark.parametrize(
    "name, expected",
    [
        ("==", Operator.EQUAL),
        ("in", Operator.IN),
        ("starts-with", Operator.STARTS_WITH),
        ("type", Operator.TYPE),
        ("!", Operator.NOT),
        ("not", Operator.NOT),
    ],
)
def test_parse_operator(name, expected):
    assert parse_operator(name) is expected


def test_parse_unknown_operator():
    with pytest.raises(ExpressionError, match="Unknown operator: invalid-op"):
        parse_operator("invalid-op")


def test_literals():
    assert compile_expression(5).value == ExpressionValue.of_number(5)
    assert compile_expression(5.0).value == ExpressionValue.of_float("5.0")
    assert compile_expression(True).value == ExpressionValue.of_bool(True)
    assert compile_expression(None).value == ExpressionValue.null()


def test_object_expression_rejected():
    with pytest.raises(ExpressionError, match="Object expressions"):
        compile_expression({"a": 1})


def test_empty_array_rejected():
    with pytest.raises(ExpressionError, match="cannot be empty"):
        compile_expression([])


def test_non_string_operator_rejected():
    with pytest.raises(ExpressionError, match="operator string"):
        compile_expression([1, 2])


def test_argument_count_checked():
    with pytest.raises(ExpressionError, match="Expected 2 arguments, got 1"):
        compile_expression(["==", 1])
    with pytest.raises(ExpressionError, match="Expected 0 arguments, got 1"):
        compile_expression(["key", "x"])
    with pytest.raises(ExpressionError, match="at least 3"):
        compile_expression(["regex-capture", ["key"], "x"])


def test_in_requires_array_literal():
    with pytest.raises(ExpressionError, match="array of values"):
        compile_expression(["in", ["tag", "kind"], "park"])


def test_string_arguments_required():
    with pytest.raises(ExpressionError):
        compile_expression(["starts-with", ["key"], 3])
    with pytest.raises(ExpressionError):
        compile_expression(["tag", 3])
    with pytest.raises(ExpressionError):
        compile_expression(["regex-capture", ["key"], "(a)", "1"])


def test_regex_capture_group():
    compiled = compile_expression(["regex-capture", ["key"], "^name:?(.*)$", 1])
    assert compiled.op is Operator.REGEX_CAPTURE
    assert compiled.group == 1


def test_value_from_json_array_and_object():
    value = value_from_json([1, "a", None, 2.5])
    assert value.kind is ValueKind.ARRAY
    assert str(value) == "[1, a, null, 2.5]"
    assert value_from_json({"b": 1, "a": 2}) == ExpressionValue.of_string('{"a":2,"b":1}')


def test_value_from_mvt():
    assert value_from_mvt(TileValue(string_value="park")) == ExpressionValue.of_string("park")
    assert value_from_mvt(TileValue(double_value=3.41)) == ExpressionValue.of_float("3.41")
    assert value_from_mvt(TileValue(double_value=2.0)) == ExpressionValue.of_float("2")
    assert value_from_mvt(TileValue(float_value=3.41)) == ExpressionValue.of_float("3.41")
    assert value_from_mvt(TileValue(sint_value=1000)) == ExpressionValue.of_number(1000)
    assert value_from_mvt(TileValue(uint_value=7)) == ExpressionValue.of_number(7)
    assert value_from_mvt(TileValue(bool_value=False)) == ExpressionValue.of_bool(False)
    assert value_from_mvt(TileValue()) == ExpressionValue.null()


def test_float_truthiness_and_display():
    assert ExpressionValue.of_float("0").to_bool() is False
    assert ExpressionValue.of_float("0.0").to_bool() is False
    assert ExpressionValue.of_float("0.5").to_bool() is True
    assert str(ExpressionValue.of_bool(False)) == "false"
    assert ExpressionValue.null().to_bool() is False
    assert ExpressionValue.of_array([]).to_bool() is False


def test_values_of_different_kinds_differ():
    assert ExpressionValue.of_number(1) != ExpressionValue.of_bool(True)
    assert ExpressionValue.of_number(1) != ExpressionValue.of_float("1")