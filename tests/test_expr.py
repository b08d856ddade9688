from __future__ import annotations

import allure
import pytest

from moleman.engine.expr import (
    UNDEFINED,
    ExpressionError,
    MissingValueError,
    eval_condition,
    evaluate_expression,
    is_truthy,
    normalize_expression,
)

pytestmark = [
    allure.epic("Workflow Engine"),
    allure.feature("Expression Evaluator"),
]


@pytest.fixture()
def data() -> dict:
    return {
        "input": {"prompt": "ship it"},
        "outputs": {
            "review": "LGTM",
            "review_json": {"structured_output": {"done": True, "score": 7}, "done": True},
            "items": ["a", "b", "c"],
        },
        "last": "LGTM",
        "sessions": {},
    }


def test_condition_reads_nested_json_fields(data: dict) -> None:
    assert eval_condition("outputs.review_json.structured_output.done == true", data) is True
    assert eval_condition("outputs.review_json.structured_output.score >= 8", data) is False


def test_condition_accepts_template_braces(data: dict) -> None:
    assert eval_condition("{{ last == 'LGTM' }}", data) is True


def test_condition_with_undefined_root_is_false(data: dict) -> None:
    assert eval_condition("nothing.here == 1", data) is False


def test_condition_reading_through_missing_field_is_false(data: dict) -> None:
    assert eval_condition("outputs.plan_json.structured_output.done == true", data) is False


def test_condition_must_be_boolean(data: dict) -> None:
    with pytest.raises(ExpressionError, match="condition did not evaluate to bool"):
        eval_condition("outputs.review", data)


def test_empty_expression_is_rejected() -> None:
    with pytest.raises(ExpressionError, match="empty expression"):
        normalize_expression("  {{   }} ")


def test_missing_value_raises_or_yields_undefined() -> None:
    with pytest.raises(MissingValueError):
        evaluate_expression("a.b", {"a": None})

    assert evaluate_expression("a.b", {"a": None}, missing="undefined") is UNDEFINED
    assert evaluate_expression("ghost", {}, missing="undefined") is UNDEFINED


def test_missing_key_and_out_of_range_index_are_undefined(data: dict) -> None:
    assert evaluate_expression("outputs.unknown", data) is UNDEFINED
    assert evaluate_expression("outputs.items[9]", data) is UNDEFINED
    assert eval_condition("outputs.items[9] == undefined", data) is True


def test_bracket_and_dot_indexing(data: dict) -> None:
    assert evaluate_expression("outputs.items[1]", data) == "b"
    assert evaluate_expression("outputs['review']", data) == "LGTM"
    assert evaluate_expression("outputs.items.2", data) == "c"


def test_equality_is_typed() -> None:
    assert eval_condition("'1' == 1", {}) is False
    assert eval_condition("1 == 1.0", {}) is True
    assert eval_condition("true == 1", {}) is False
    assert eval_condition("null == undefined", {}) is True
    assert eval_condition("'a' !== 'b'", {}) is True


def test_ordering_mismatched_types_is_fatal() -> None:
    with pytest.raises(ExpressionError, match="cannot compare string < number"):
        eval_condition("'a' < 1", {})


def test_unary_and_grouping() -> None:
    data = {"x": 2}
    assert eval_condition("-x > -3", data) is True
    assert eval_condition("!(x == 2)", data) is False
    assert eval_condition("!missing", {}) is False


def test_logical_operators_short_circuit() -> None:
    assert eval_condition("false && nope.deep", {}) is False
    assert eval_condition("true || nope.deep", {}) is True
    assert evaluate_expression("'' || 'fallback'", {}) == "fallback"


def test_string_literals_and_escapes() -> None:
    assert evaluate_expression('"a\\"b"', {}) == 'a"b'
    assert evaluate_expression("'it\\'s'", {}) == "it's"


def test_malformed_expressions_raise() -> None:
    with pytest.raises(ExpressionError, match="unterminated string literal"):
        evaluate_expression("'abc", {})
    with pytest.raises(ExpressionError, match="expected"):
        evaluate_expression("(1 == 1", {})
    with pytest.raises(ExpressionError, match="unexpected token"):
        evaluate_expression("1 == == 2", {})


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, False),
        (UNDEFINED, False),
        (0, False),
        (float("nan"), False),
        ("", False),
        ("0", True),
        ([], True),
        ({}, True),
        (3, True),
    ],
)
def test_truthiness(value: object, expected: bool) -> None:
    assert is_truthy(value) is expected
