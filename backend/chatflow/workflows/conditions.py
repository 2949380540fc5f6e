# /chatflow/workflows/conditions.py

"""
Condition evaluation for branching nodes.

Two forms are supported:

1. Structured conditions: {variable, operator, value}, evaluated by
   evaluate_condition() with loose, string-friendly coercion. Chat input is
   always text, so "150" must compare greater than 100.

2. Free-form boolean expressions over the variable namespace, evaluated by
   ConditionExpression. This is NOT eval(): the expression is parsed with the
   ast module and only a whitelisted subset of Python is accepted.

Equality rule for equals / not_equals:
- None equals only None or ""
- if both sides coerce to finite numbers, compare numerically ("100" == 100)
- if both sides are booleans or "true"/"false" strings, compare as booleans
- otherwise compare str() forms, case-insensitively unless case_sensitive
"""

import ast
import math
import operator
import re
from typing import Any, Dict, List, Optional


class ConditionError(ValueError):
    """Raised for conditions that can never be evaluated (unknown operator, bad regex)."""


class ExpressionSecurityError(ConditionError):
    """Raised when an expression contains forbidden constructs."""


class ExpressionSyntaxError(ConditionError):
    """Raised when an expression is not valid syntax."""


class ExpressionEvaluationError(Exception):
    """Raised when a valid expression fails against the current variables.

    The original exception is chained via __cause__.
    """


# Structured operators, canonical names first, symbolic aliases after
_ALIASES = {
    "==": "equals",
    "!=": "not_equals",
    ">": "greater",
    "<": "less",
    ">=": "greater_equal",
    "<=": "less_equal",
    "greater_than": "greater",
    "less_than": "less",
}

OPERATORS = (
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "greater",
    "less",
    "greater_equal",
    "less_equal",
    "regex",
    "in_array",
    "is_empty",
    "is_not_empty",
) + tuple(_ALIASES)

_BOOL_STRINGS = {"true": True, "false": False}


# ---------------- Coercion helpers ---------------- #

def to_number(value: Any) -> Optional[float]:
    """Returns value as a finite float, or None when it is not numeric."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _to_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return _BOOL_STRINGS.get(value.strip().lower())
    return None


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def loose_equals(left: Any, right: Any, case_sensitive: bool = False) -> bool:
    if left is None or right is None:
        return left in (None, "") and right in (None, "")

    left_num, right_num = to_number(left), to_number(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num

    left_bool, right_bool = _to_bool(left), _to_bool(right)
    if left_bool is not None and right_bool is not None:
        return left_bool == right_bool

    if isinstance(left, (list, tuple, dict)) or isinstance(right, (list, tuple, dict)):
        return left == right

    left_text, right_text = str(left), str(right)
    if not case_sensitive:
        return left_text.casefold() == right_text.casefold()
    return left_text == right_text


def _contains(haystack: Any, needle: Any, case_sensitive: bool) -> bool:
    if haystack is None:
        return False
    if isinstance(haystack, (list, tuple, set)):
        return any(loose_equals(item, needle, case_sensitive) for item in haystack)
    if isinstance(haystack, dict):
        return str(needle) in haystack
    text, fragment = str(haystack), "" if needle is None else str(needle)
    if not case_sensitive:
        return fragment.casefold() in text.casefold()
    return fragment in text


def _compare_numbers(left: Any, right: Any, op) -> bool:
    left_num, right_num = to_number(left), to_number(right)
    if left_num is None or right_num is None:
        return False
    return op(left_num, right_num)


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    if isinstance(value, str):
        return [item.strip() for item in value.split(",")]
    return [] if value is None else [value]


def _regex_match(value: Any, pattern: Any, case_sensitive: bool) -> bool:
    if value is None:
        return False
    flags = 0 if case_sensitive else re.IGNORECASE
    try:
        return re.search(str(pattern), str(value), flags) is not None
    except re.error as e:
        raise ConditionError(f"Invalid regular expression {pattern!r}: {e}") from e


def normalize_operator(op: str) -> str:
    canonical = _ALIASES.get(op, op)
    if canonical not in OPERATORS:
        raise ConditionError(f"Unknown condition operator: {op!r}")
    return canonical


def evaluate_condition(left: Any, op: str, right: Any = None, case_sensitive: bool = False) -> bool:
    """
    Evaluate a structured condition.

    Args:
        left: The resolved variable value
        op: Operator name or symbolic alias
        right: The value to compare against (ignored by is_empty / is_not_empty)
        case_sensitive: Whether string comparisons respect case

    Raises:
        ConditionError: For unknown operators or invalid regular expressions
    """
    canonical = normalize_operator(op)

    if canonical == "equals":
        return loose_equals(left, right, case_sensitive)
    if canonical == "not_equals":
        return not loose_equals(left, right, case_sensitive)
    if canonical == "contains":
        return _contains(left, right, case_sensitive)
    if canonical == "not_contains":
        return not _contains(left, right, case_sensitive)
    if canonical == "greater":
        return _compare_numbers(left, right, operator.gt)
    if canonical == "less":
        return _compare_numbers(left, right, operator.lt)
    if canonical == "greater_equal":
        return _compare_numbers(left, right, operator.ge)
    if canonical == "less_equal":
        return _compare_numbers(left, right, operator.le)
    if canonical == "regex":
        return _regex_match(left, right, case_sensitive)
    if canonical == "in_array":
        return any(loose_equals(left, item, case_sensitive) for item in _as_list(right))
    if canonical == "is_empty":
        return is_empty(left)
    return not is_empty(left)


# ---------------- Free-form expressions ---------------- #

_COMPARISON_OPS: Dict[type, Any] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_BINARY_OPS: Dict[type, Any] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPS: Dict[type, Any] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

# Pure builtins an expression may call by name
_FUNCTIONS: Dict[str, Any] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "abs": abs,
    "min": min,
    "max": max,
    "lower": lambda s: str(s).lower(),
    "number": to_number,
}

_CONSTANT_NAMES = {"True": True, "False": False, "None": None}


class _ExpressionValidator(ast.NodeVisitor):
    """Collects every forbidden construct found in an expression."""

    def __init__(self):
        self.errors: List[str] = []

    def generic_visit(self, node):
        allowed = (
            ast.Expression, ast.Compare, ast.BoolOp, ast.BinOp, ast.UnaryOp, ast.IfExp,
            ast.Name, ast.Load, ast.Constant, ast.Subscript, ast.List, ast.Tuple, ast.Call,
            ast.And, ast.Or,
        ) + tuple(_COMPARISON_OPS) + tuple(_BINARY_OPS) + tuple(_UNARY_OPS)
        if not isinstance(node, allowed):
            self.errors.append(f"Forbidden construct: {type(node).__name__}")
            return
        super().generic_visit(node)

    def visit_Call(self, node: ast.Call):
        if not (isinstance(node.func, ast.Name) and node.func.id in _FUNCTIONS):
            self.errors.append(f"Forbidden function call: {ast.dump(node.func)}")
            return
        if node.keywords:
            self.errors.append(f"{node.func.id}() does not accept keyword arguments")
        for arg in node.args:
            self.visit(arg)

    def visit_Subscript(self, node: ast.Subscript):
        if isinstance(node.slice, ast.Slice):
            self.errors.append("Slice syntax (e.g., [1:3]) is forbidden")
            return
        self.generic_visit(node)

    def visit_Constant(self, node: ast.Constant):
        if node.value is not None and not isinstance(node.value, (str, int, float, bool)):
            self.errors.append(f"Forbidden constant type: {type(node.value).__name__}")

    def visit_Name(self, node: ast.Name):
        if node.id.startswith("__"):
            self.errors.append(f"Forbidden name: {node.id!r}")


class _ExpressionEvaluator(ast.NodeVisitor):
    """Evaluates a validated expression against a variable namespace."""

    def __init__(self, variables: Dict[str, Any]):
        self._variables = variables

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in _CONSTANT_NAMES:
            return _CONSTANT_NAMES[node.id]
        # Undefined variables read as None
        return self._variables.get(node.id)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        value = self.visit(node.value)
        key = self.visit(node.slice)
        try:
            return value[key]
        except (KeyError, IndexError):
            return None
        except TypeError as e:
            raise ExpressionEvaluationError(f"Cannot access {key!r} on {type(value).__name__}") from e

    def visit_Call(self, node: ast.Call) -> Any:
        func = _FUNCTIONS[node.func.id]
        args = [self.visit(arg) for arg in node.args]
        try:
            return func(*args)
        except (TypeError, ValueError) as e:
            raise ExpressionEvaluationError(f"{node.func.id}() failed: {e}") from e

    def visit_Compare(self, node: ast.Compare) -> Any:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            try:
                if not _COMPARISON_OPS[type(op)](left, right):
                    return False
            except TypeError as e:
                raise ExpressionEvaluationError(
                    f"Cannot compare {type(left).__name__} and {type(right).__name__} with {type(op).__name__}"
                ) from e
            left = right
        return True

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        result = None
        if isinstance(node.op, ast.And):
            for value in node.values:
                result = self.visit(value)
                if not result:
                    return result
            return result
        for value in node.values:
            result = self.visit(value)
            if result:
                return result
        return result

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        try:
            return _BINARY_OPS[type(node.op)](left, right)
        except (TypeError, ZeroDivisionError) as e:
            raise ExpressionEvaluationError(f"{type(node.op).__name__} failed: {e}") from e

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        try:
            return _UNARY_OPS[type(node.op)](operand)
        except TypeError as e:
            raise ExpressionEvaluationError(f"{type(node.op).__name__} failed: {e}") from e

    def visit_List(self, node: ast.List) -> Any:
        return [self.visit(elt) for elt in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> Any:
        return tuple(self.visit(elt) for elt in node.elts)

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        if self.visit(node.test):
            return self.visit(node.body)
        return self.visit(node.orelse)


class ConditionExpression:
    """
    A parsed and validated boolean expression.

    Variables are referenced by bare name (``age >= 18 and city == "Pune"``);
    nested values by subscript (``contact["phone_number"]``). Undefined names
    read as None.

    Raises at construction:
        ExpressionSyntaxError: for invalid syntax
        ExpressionSecurityError: for forbidden constructs
    """

    def __init__(self, expression: str):
        self._expression = expression
        try:
            self._ast = ast.parse(expression.strip(), mode="eval")
        except SyntaxError as e:
            raise ExpressionSyntaxError(f"Invalid syntax: {e.msg}") from e

        validator = _ExpressionValidator()
        validator.visit(self._ast)
        if validator.errors:
            raise ExpressionSecurityError("; ".join(validator.errors))

    @property
    def expression(self) -> str:
        return self._expression

    def evaluate(self, variables: Dict[str, Any]) -> bool:
        return bool(_ExpressionEvaluator(variables).visit(self._ast))

    def __repr__(self) -> str:
        return f"ConditionExpression({self._expression!r})"
