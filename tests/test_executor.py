import pytest

from mvtwrangler.filtering.executor import (
    EvaluationContext,
    compare_values,
    evaluate,
    evaluate_bool,
)
from mvtwrangler.filtering.expression import ExpressionValue, compile_expression
from mvtwrangler.mvt import TileValue


@pytest.fixture
def context():
    properties = {
        "name": TileValue(string_value="Central Park"),
        "kind": TileValue(string_value="park"),
        "area": TileValue(double_value=3.41),
        "public": TileValue(bool_value=True),
        "capacity": TileValue(sint_value=1000),
    }
    return (
        EvaluationContext("test", properties)
        .with_geometry_type("Polygon")
        .with_current_key("name:en")
    )


def check(expr, ctx):
    return evaluate_bool(compile_expression(expr), ctx)


def test_simple_equality_filter(context):
    assert check(["==", ["tag", "kind"], "park"], context) is True


def test_inequality_filter(context):
    assert check(["!=", ["tag", "kind"], "school"], context) is True


def test_numeric_comparison(context):
    assert check([">", ["tag", "capacity"], 500], context) is True
    assert check(["<", ["tag", "area"], 5.0], context) is True


def test_logical_operations(context):
    assert check(
        ["any", ["==", ["tag", "kind"], "school"], ["==", ["tag", "kind"], "park"]],
        context,
    )
    assert check(
        ["all", ["==", ["tag", "kind"], "park"], [">", ["tag", "capacity"], 100]],
        context,
    )
    assert check(["!", ["==", ["tag", "kind"], "school"]], context)


def test_none_operation(context):
    assert check(["none", ["==", ["tag", "kind"], "school"]], context) is True
    assert check(["none", ["==", ["tag", "kind"], "park"]], context) is False


def test_membership_operations(context):
    assert check(
        ["in", ["tag", "kind"], ["literal", ["park", "school", "hospital"]]], context
    )
    assert check(
        ["!", ["in", ["tag", "kind"], ["literal", ["school", "hospital"]]]], context
    )
    assert check(["in", None, ["literal", [None, "school", "hospital"]]], context)


def test_string_operations(context):
    assert check(["starts-with", ["tag", "name"], "Central"], context)
    assert check(["ends-with", ["tag", "name"], "Park"], context)
    assert check(["regex-match", ["tag", "name"], "^Central.*Park$"], context)


def test_context_operations(context):
    assert check(["starts-with", ["key"], "name:"], context)
    assert check(["==", ["type"], "Polygon"], context)


def test_boolean_type_conversion(context):
    assert check(["boolean", ["tag", "public"]], context) is True


def test_missing_tag_handling(context):
    assert check(["==", ["tag", "nonexistent"], "value"], context) is False


def test_complex_filter_example(context):
    expr = [
        "all",
        ["==", ["tag", "kind"], "park"],
        ["boolean", ["tag", "public"]],
        ["any", [">", ["tag", "capacity"], 500], [">", ["tag", "area"], 2.0]],
    ]
    assert check(expr, context) is True


def test_regex_capture(context):
    compiled = compile_expression(["regex-capture", ["tag", "name"], r"^(\w+)", 1])
    assert evaluate(compiled, context) == ExpressionValue.of_string("Central")


def test_regex_capture_missing_group_is_null(context):
    compiled = compile_expression(["regex-capture", ["tag", "name"], r"^(\w+)", 5])
    assert evaluate(compiled, context) == ExpressionValue.null()
    compiled = compile_expression(["regex-capture", ["tag", "name"], r"^xyz(\w+)", 1])
    assert evaluate(compiled, context) == ExpressionValue.null()


def test_complex_regex_capture_filter(context):
    compiled = compile_expression(
        [
            "all",
            ["starts-with", ["key"], "name"],
            [
                "not",
                [
                    "in",
                    ["regex-capture", ["key"], "^name:?(.*)$", 1],
                    ["literal", ["", "ja"]],
                ],
            ],
        ]
    )
    assert evaluate_bool(compiled, context) is True
    assert evaluate_bool(compiled, context.with_current_key("name:ja")) is False
    assert evaluate_bool(compiled, context.with_current_key("name")) is False


def test_key_and_type_absent_are_null():
    ctx = EvaluationContext("roads", {})
    assert evaluate(compile_expression(["key"]), ctx) == ExpressionValue.null()
    assert evaluate(compile_expression(["type"]), ctx) == ExpressionValue.null()


def test_with_current_key_leaves_original_untouched(context):
    changed = context.with_current_key("ref")
    assert changed.current_key == "ref"
    assert context.current_key == "name:en"


def test_tag_float_value_compares_with_literal(context):
    assert check(["==", ["tag", "area"], 3.41], context) is True


@pytest.mark.parametrize(
    "left, right, expected",
    [
        (ExpressionValue.null(), ExpressionValue.null(), 0),
        (ExpressionValue.null(), ExpressionValue.of_number(1), -1),
        (ExpressionValue.of_string("a"), ExpressionValue.null(), 1),
        (ExpressionValue.of_bool(False), ExpressionValue.of_bool(True), -1),
        (ExpressionValue.of_number(2), ExpressionValue.of_float("1.5"), 1),
        (ExpressionValue.of_float("1.5"), ExpressionValue.of_number(2), -1),
        (ExpressionValue.of_float("2.0"), ExpressionValue.of_float("2"), 0),
        (ExpressionValue.of_float("NaN"), ExpressionValue.of_float("1"), 0),
        (ExpressionValue.of_float("abc"), ExpressionValue.of_float("0"), 0),
        (ExpressionValue.of_string("b"), ExpressionValue.of_string("a"), 1),
        (ExpressionValue.of_number(10), ExpressionValue.of_string("9"), -1),
        (ExpressionValue.of_bool(True), ExpressionValue.of_string("true"), 0),
    ],
)
def test_compare_values(left, right, expected):
    assert compare_values(left, right) == expected