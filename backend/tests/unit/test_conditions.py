# backend/tests/unit/test_conditions.py
import pytest

from chatflow.workflows.conditions import (
    ConditionError,
    ConditionExpression,
    ExpressionEvaluationError,
    ExpressionSecurityError,
    ExpressionSyntaxError,
    evaluate_condition,
    loose_equals,
    to_number,
)


@pytest.mark.parametrize("left, right, expected", [
    ("100", 100, True),
    ("1e2", "100.0", True),
    ("true", True, True),
    ("FALSE", False, True),
    ("Hello", "hello", True),
    (None, "", True),
    (None, 0, False),
    ("abc", "abd", False),
])
def test_loose_equality(left, right, expected):
    assert loose_equals(left, right) is expected


def test_case_sensitive_equality():
    assert evaluate_condition("Hello", "equals", "hello", case_sensitive=True) is False
    assert evaluate_condition("Hello", "equals", "Hello", case_sensitive=True) is True


def test_numeric_comparison_of_chat_text():
    """Chat input is text, so "150" must compare as a number."""
    assert evaluate_condition("150", "greater", 100) is True
    assert evaluate_condition("50", "greater", "100") is False
    assert evaluate_condition("abc", "greater", 1) is False
    assert evaluate_condition("7", ">=", 7) is True


def test_contains_regex_and_in_array():
    assert evaluate_condition("Order #123 shipped", "contains", "SHIPPED") is True
    assert evaluate_condition(["a", "b"], "contains", "b") is True
    assert evaluate_condition("hello", "not_contains", "x") is True
    assert evaluate_condition("+7 900 123", "regex", r"^\+7") is True
    assert evaluate_condition("2", "in_array", "1, 2, 3") is True
    assert evaluate_condition("4", "in_array", [1, 2, 3]) is False


def test_emptiness():
    assert evaluate_condition("   ", "is_empty") is True
    assert evaluate_condition([], "is_empty") is True
    assert evaluate_condition(0, "is_not_empty") is True


def test_unknown_operator_and_bad_regex_raise():
    with pytest.raises(ConditionError):
        evaluate_condition(1, "approximately", 1)
    with pytest.raises(ConditionError):
        evaluate_condition("x", "regex", "(")


def test_to_number_rejects_non_finite_and_booleans():
    assert to_number(" 42 ") == 42.0
    assert to_number("nan") is None
    assert to_number(True) is None
    assert to_number("") is None


def test_expression_evaluation():
    expression = ConditionExpression("number(age) >= 18 and lower(city) in ['pune', 'delhi']")
    assert expression.evaluate({"age": "21", "city": "Pune"}) is True
    assert expression.evaluate({"age": "16", "city": "Pune"}) is False


def test_expression_undefined_names_read_as_none():
    assert ConditionExpression("missing is None").evaluate({}) is True
    assert ConditionExpression("contact['phone_number'] == '123'").evaluate({"contact": {"phone_number": "123"}}) is True
    assert ConditionExpression("contact['nope'] is None").evaluate({"contact": {}}) is True


@pytest.mark.parametrize("source", [
    "__import__('os')",
    "().__class__",
    "open('/etc/passwd')",
    "[x for x in range(3)]",
    "lambda: 1",
    "items[1:3]",
])
def test_expression_rejects_forbidden_constructs(source):
    with pytest.raises(ExpressionSecurityError):
        ConditionExpression(source)


def test_expression_syntax_error():
    with pytest.raises(ExpressionSyntaxError):
        ConditionExpression("age >=")


def test_expression_runtime_failure_is_wrapped():
    with pytest.raises(ExpressionEvaluationError):
        ConditionExpression("age > 18").evaluate({"age": "twenty"})
