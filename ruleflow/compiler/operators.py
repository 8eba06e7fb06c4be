"""
Comparison operators shared by field tests, joins and aggregates.

Ordering operators return False for None or incomparable values instead of
raising, so a missing field never aborts matching.
"""

from __future__ import annotations

from typing import Any, Callable


def _eval_eq(actual: Any, expected: Any) -> bool:
    """Evaluate equality check."""
    return actual == expected


def _eval_ne(actual: Any, expected: Any) -> bool:
    """Evaluate not-equal check."""
    return actual != expected


def _eval_in(actual: Any, expected: Any) -> bool:
    """Evaluate membership of the actual value in the expected collection."""
    if isinstance(expected, (list, tuple, set, frozenset)):
        return actual in expected
    return False


def _eval_not_in(actual: Any, expected: Any) -> bool:
    """Evaluate 'not in' check."""
    if isinstance(expected, (list, tuple, set, frozenset)):
        return actual not in expected
    return True


def _eval_contains(actual: Any, expected: Any) -> bool:
    """Evaluate membership of the expected value in the actual collection."""
    if isinstance(actual, (list, tuple, set, frozenset, str, dict)):
        try:
            return expected in actual
        except TypeError:
            return False
    return False


def _eval_gt(actual: Any, expected: Any) -> bool:
    """Evaluate greater-than check."""
    try:
        return actual is not None and actual > expected
    except TypeError:
        return False


def _eval_lt(actual: Any, expected: Any) -> bool:
    """Evaluate less-than check."""
    try:
        return actual is not None and actual < expected
    except TypeError:
        return False


def _eval_gte(actual: Any, expected: Any) -> bool:
    """Evaluate greater-than-or-equal check."""
    try:
        return actual is not None and actual >= expected
    except TypeError:
        return False


def _eval_lte(actual: Any, expected: Any) -> bool:
    """Evaluate less-than-or-equal check."""
    try:
        return actual is not None and actual <= expected
    except TypeError:
        return False


def _eval_exists(actual: Any, expected: Any) -> bool:
    """Evaluate existence check."""
    return actual is not None


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": _eval_eq,
    "ne": _eval_ne,
    "in": _eval_in,
    "not_in": _eval_not_in,
    "contains": _eval_contains,
    "gt": _eval_gt,
    "lt": _eval_lt,
    "gte": _eval_gte,
    "lte": _eval_lte,
    "exists": _eval_exists,
}

# Operator spellings accepted in rule specs
OPERATOR_MAP = {
    "==": "eq",
    "=": "eq",
    "!=": "ne",
    "<>": "ne",
    "in": "in",
    "not in": "not_in",
    "not_in": "not_in",
    "contains": "contains",
    ">": "gt",
    "<": "lt",
    ">=": "gte",
    "<=": "lte",
    "exists": "exists",
}


def normalize_operator(op: str) -> str | None:
    """Map an operator spelling to its canonical name, or None if unknown."""
    if op in OPERATORS:
        return op
    return OPERATOR_MAP.get(op.strip().lower())


def compare(op: str, actual: Any, expected: Any) -> bool:
    """Apply a canonical operator."""
    return OPERATORS[op](actual, expected)
