"""Condition evaluator — one predicate against one dotted field of an event.

Pure, stateless, and fail-closed: a malformed condition (wrong comparand
type, bad regex, unknown operator) evaluates to False instead of raising.
"""

import re
from numbers import Real

from enricher.rules import Condition

_MISSING = None

# Rule packs written with camelCase operator names keep
# working; the engine only ever sees the snake_case names.
OPERATOR_ALIASES = {
    "startsWith": "starts_with",
    "endsWith": "ends_with",
}

OPERATORS = frozenset({
    "equals", "contains", "starts_with", "ends_with", "regex",
    "gt", "lt", "gte", "lte", "in", "exists",
})


def get_field(obj, path: str):
    """Walk a dot-separated path; None on any missing intermediate.

    A purely numeric segment indexes into a list (``risks.0.severity``).
    """
    current = obj
    for key in path.split("."):
        if current is None:
            return _MISSING
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, (list, tuple)) and key.isdigit():
            index = int(key)
            current = current[index] if index < len(current) else _MISSING
        else:
            return _MISSING
    return current


def _is_number(value) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _strict_equals(a, b) -> bool:
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    return a == b


def _text_op(value, operand, fn) -> bool:
    if not isinstance(value, str) or not isinstance(operand, str):
        return False
    return fn(value, operand)


def _regex(value, pattern) -> bool:
    if not isinstance(value, str) or not isinstance(pattern, str):
        return False
    try:
        return re.search(pattern, value) is not None
    except re.error:
        return False


def _compare(value, operand, fn) -> bool:
    if not _is_number(value) or not _is_number(operand):
        return False
    return fn(value, operand)


def evaluate_condition(event: dict, condition: Condition) -> bool:
    """Return True if *event* satisfies *condition*."""
    value = get_field(event, condition.field)
    op = OPERATOR_ALIASES.get(condition.operator, condition.operator)
    operand = condition.value

    if op == "equals":
        return _strict_equals(value, operand)
    elif op == "contains":
        return _text_op(value, operand, lambda v, o: o in v)
    elif op == "starts_with":
        return _text_op(value, operand, str.startswith)
    elif op == "ends_with":
        return _text_op(value, operand, str.endswith)
    elif op == "regex":
        return _regex(value, operand)
    elif op == "gt":
        return _compare(value, operand, lambda v, o: v > o)
    elif op == "lt":
        return _compare(value, operand, lambda v, o: v < o)
    elif op == "gte":
        return _compare(value, operand, lambda v, o: v >= o)
    elif op == "lte":
        return _compare(value, operand, lambda v, o: v <= o)
    elif op == "in":
        if not isinstance(operand, (list, tuple, set, frozenset)):
            return False
        return any(_strict_equals(value, item) for item in operand)
    elif op == "exists":
        return value is not None
    return False
