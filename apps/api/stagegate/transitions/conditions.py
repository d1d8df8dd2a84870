"""Closed predicate language for rule ``extra_conditions``.

A condition is a JSON document made of ``{"all": [...]}``, ``{"any": [...]}``,
``{"not": {...}}`` and leaves ``{"path": "a.b", "op": "gte", "value": 10}``.
Nothing is executed; leaves only compare a resolved value with a literal.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import ValidationError

from stagegate.transitions.schemas import Condition, ConditionAll, ConditionAny, ConditionLeaf, ConditionNot

MAX_CONDITION_DEPTH = 8


class ConditionSyntaxError(ValueError):
    pass


def parse_condition(payload: Any, *, depth: int = 0) -> Condition:
    if depth > MAX_CONDITION_DEPTH:
        raise ConditionSyntaxError("condition nesting is too deep")
    if not isinstance(payload, dict):
        raise ConditionSyntaxError("condition must be an object")
    try:
        if "all" in payload:
            items = payload.get("all")
            if not isinstance(items, list):
                raise ConditionSyntaxError("'all' must be a list")
            return ConditionAll(all=[parse_condition(item, depth=depth + 1) for item in items])
        if "any" in payload:
            items = payload.get("any")
            if not isinstance(items, list):
                raise ConditionSyntaxError("'any' must be a list")
            return ConditionAny(any=[parse_condition(item, depth=depth + 1) for item in items])
        if "not" in payload:
            return ConditionNot.model_validate({"not": parse_condition(payload.get("not"), depth=depth + 1)})
        return ConditionLeaf.model_validate(payload)
    except ValidationError as exc:
        raise ConditionSyntaxError(str(exc)) from exc


def resolve_path(context: dict[str, Any], path: str) -> tuple[bool, Any]:
    current: Any = context
    for segment in path.split("."):
        if not isinstance(current, dict) or segment not in current:
            return False, None
        current = current[segment]
    return True, current


def is_present(value: Any) -> bool:
    return value not in (None, "", [], {}, ())


def evaluate_condition(condition: Condition, context: dict[str, Any]) -> bool:
    if isinstance(condition, ConditionAll):
        return all(evaluate_condition(item, context) for item in condition.all)
    if isinstance(condition, ConditionAny):
        return any(evaluate_condition(item, context) for item in condition.any)
    if isinstance(condition, ConditionNot):
        return not evaluate_condition(condition.not_, context)

    exists, current = resolve_path(context, condition.path)
    op = condition.op
    target = condition.value

    if op == "exists":
        return exists and is_present(current)
    if op == "eq":
        return _normalized(current) == _normalized(target)
    if op == "neq":
        return _normalized(current) != _normalized(target)
    if op == "in":
        if not isinstance(target, (list, tuple, set)):
            return False
        return any(_normalized(current) == _normalized(item) for item in target)
    if op == "contains":
        if isinstance(current, str) and isinstance(target, str):
            return target in current
        if isinstance(current, (list, tuple, set)):
            return target in current
        return False

    left = _normalized(current)
    right = _normalized(target)
    if left is None or right is None:
        return False
    try:
        if op == "gt":
            return left > right
        if op == "gte":
            return left >= right
        if op == "lt":
            return left < right
        if op == "lte":
            return left <= right
    except TypeError:
        return False
    return False


def _normalized(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, str):
        as_number = _parse_number(value)
        if as_number is not None:
            return as_number
        as_date = _parse_date(value)
        if as_date is not None:
            return as_date.isoformat()
        return value
    return value


def _parse_number(value: str) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_date(value: str) -> date | None:
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None
