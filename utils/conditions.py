"""
Condition evaluator — used by the Rule Engine and the Reminder job generator.

Evaluates typed Predicate trees against an entity snapshot plus a flat map of
derived metrics. Evaluation is total: unknown fields and type mismatches
evaluate to False instead of raising.

Field lookup order: metrics → snapshot → snapshot["metadata"]. Nested values
use dot notation, e.g. 'metadata.bank.name'.
"""
from __future__ import annotations

import operator as op
from typing import Any, Mapping

from models.schemas import (
    AllOf, AnyOf, CompareCondition, ExistsCondition, MembershipCondition, NotOf, Predicate,
)


_MISSING = object()

OPERATORS: dict[str, Any] = {
    "eq": op.eq,
    "neq": op.ne,
    "gt": op.gt,
    "gte": op.ge,
    "lt": op.lt,
    "lte": op.le,
}

_NUMERIC_OPERATORS = frozenset({"gt", "gte", "lt", "lte"})


def get_nested_value(data: Mapping[str, Any], field: str) -> Any:
    """Get a value from nested dict using dot notation. Returns _MISSING when absent."""
    current: Any = data
    for part in field.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def resolve_field(field: str, snapshot: Mapping[str, Any], metrics: Mapping[str, Any]) -> Any:
    for source in (metrics, snapshot, snapshot.get("metadata") or {}):
        value = get_nested_value(source, field)
        if value is not _MISSING:
            return value
    return _MISSING


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _same_kind(a: Any, b: Any) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool)
    if _is_number(a) or _is_number(b):
        return _is_number(a) and _is_number(b)
    if isinstance(a, str) or isinstance(b, str):
        return isinstance(a, str) and isinstance(b, str)
    return a is None and b is None


def _compare(cond: CompareCondition, value: Any) -> bool:
    if value is _MISSING:
        return False
    if cond.operator in _NUMERIC_OPERATORS:
        if not (_is_number(value) and _is_number(cond.value)):
            return False
    elif not _same_kind(value, cond.value):
        return False
    try:
        return bool(OPERATORS[cond.operator](value, cond.value))
    except TypeError:
        return False


def _member(cond: MembershipCondition, value: Any) -> bool:
    if value is _MISSING:
        return False
    found = any(_same_kind(value, candidate) and value == candidate for candidate in cond.values)
    return not found if cond.negate else found


def evaluate(predicate: Predicate | None, snapshot: Mapping[str, Any],
             metrics: Mapping[str, Any] | None = None) -> bool:
    """Evaluate a predicate tree. A missing predicate always matches."""
    if predicate is None:
        return True
    metrics = metrics or {}

    if isinstance(predicate, AllOf):
        return all(evaluate(c, snapshot, metrics) for c in predicate.conditions)
    if isinstance(predicate, AnyOf):
        return any(evaluate(c, snapshot, metrics) for c in predicate.conditions)
    if isinstance(predicate, NotOf):
        return not evaluate(predicate.condition, snapshot, metrics)

    value = resolve_field(predicate.field, snapshot, metrics)
    if isinstance(predicate, CompareCondition):
        return _compare(predicate, value)
    if isinstance(predicate, MembershipCondition):
        return _member(predicate, value)
    if isinstance(predicate, ExistsCondition):
        return value is not _MISSING and value is not None
    return False
