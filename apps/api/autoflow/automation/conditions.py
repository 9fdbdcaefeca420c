from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

from autoflow.automation.schemas import Condition, ConditionAll, ConditionAny, ConditionNot, parse_condition


class ConditionEvaluator:
    """Evaluates a condition tree against one item.

    ``{"days_from_now": N}`` values resolve against the date of ``now`` so a
    whole run compares every item with the same threshold.
    """

    def __init__(self, now: datetime) -> None:
        self.today = now.date()

    def matches(self, conditions: dict[str, Any] | None, item: dict[str, Any]) -> bool:
        if not conditions:
            return True
        return self._eval(parse_condition(conditions), item)

    def _eval(self, condition: Condition, context: dict[str, Any]) -> bool:
        if isinstance(condition, ConditionAll):
            return all(self._eval(item, context) for item in condition.all)
        if isinstance(condition, ConditionAny):
            return any(self._eval(item, context) for item in condition.any)
        if isinstance(condition, ConditionNot):
            return not self._eval(condition.not_, context)

        exists, current = resolve_path(context, condition.path)
        op = condition.op
        target = self._resolve_token(condition.value)

        if op == "exists":
            return exists and current not in (None, "", [], {}, ())
        if op == "eq":
            return normalized_compare_value(current) == normalized_compare_value(target)
        if op == "neq":
            return normalized_compare_value(current) != normalized_compare_value(target)
        if op == "in":
            if not isinstance(target, (list, tuple, set)):
                return False
            return any(normalized_compare_value(current) == normalized_compare_value(item) for item in target)
        if op == "contains":
            if isinstance(current, str) and isinstance(target, str):
                return target in current
            if isinstance(current, (list, tuple, set)):
                return target in current
            return False

        left = normalized_compare_value(current)
        right = normalized_compare_value(target)
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

    def _resolve_token(self, value: Any) -> Any:
        if isinstance(value, dict) and "days_from_now" in value:
            return (self.today + timedelta(days=int(value["days_from_now"]))).isoformat()
        return value


def resolve_path(context: dict[str, Any], path: str) -> tuple[bool, Any]:
    current: Any = context
    for segment in path.split("."):
        if not isinstance(current, dict) or segment not in current:
            return False, None
        current = current[segment]
    return True, current


def normalized_compare_value(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
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
        pass
    try:
        return datetime.fromisoformat(value).date()
    except ValueError:
        return None
