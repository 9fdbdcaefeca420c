"""Schedule evaluation for time-triggered automations.

``compute_next_run`` is pure: the same ``(trigger_config, now)`` always gives
the same answer, and a config it cannot understand yields ``None`` instead of
an exception. Each frequency maps onto a cron expression that croniter walks
in the schedule's own time zone. Save-time validation lives in
``automation.schemas``.
"""

from __future__ import annotations

import re
from datetime import datetime, time, timezone, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter


FREQUENCIES = ("daily", "weekdays", "weekly", "monthly")
WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


def parse_time_of_day(value: Any) -> time | None:
    if not isinstance(value, str):
        return None
    match = _TIME_RE.match(value.strip())
    if match is None:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        return None
    return time(hours, minutes)


def schedule_frequency(trigger_config: Any) -> str | None:
    if not isinstance(trigger_config, dict):
        return None
    value = trigger_config.get("schedule") or trigger_config.get("frequency")
    if not isinstance(value, str):
        return None
    value = value.strip().lower()
    return value if value in FREQUENCIES else None


def parse_day_of_week(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if 0 <= value <= 6 else None
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in WEEKDAY_NAMES:
            return WEEKDAY_NAMES.index(lowered)
    return None


def parse_day_of_month(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value if 1 <= value <= 31 else None


def _zone_for(trigger_config: dict[str, Any], now: datetime) -> tzinfo | None:
    if now.tzinfo is None:
        return None
    name = trigger_config.get("timezone")
    if isinstance(name, str) and name.strip():
        try:
            return ZoneInfo(name.strip())
        except (ZoneInfoNotFoundError, ValueError):
            return now.tzinfo
    return now.tzinfo


def cron_expression(trigger_config: Any) -> str | None:
    """Translate a schedule trigger into a five-field cron expression."""
    frequency = schedule_frequency(trigger_config)
    run_time = parse_time_of_day(trigger_config.get("time")) if frequency else None
    if frequency is None or run_time is None:
        return None
    clock = f"{run_time.minute} {run_time.hour}"
    if frequency == "daily":
        return f"{clock} * * *"
    if frequency == "weekdays":
        return f"{clock} * * 1-5"
    if frequency == "weekly":
        weekday = parse_day_of_week(trigger_config.get("day_of_week"))
        # cron counts from Sunday = 0
        return None if weekday is None else f"{clock} * * {(weekday + 1) % 7}"
    day = parse_day_of_month(trigger_config.get("day_of_month"))
    return None if day is None else f"{clock} {day} * *"


def compute_next_run(trigger_config: Any, now: datetime) -> datetime | None:
    expression = cron_expression(trigger_config)
    if expression is None:
        return None

    zone = _zone_for(trigger_config, now)
    if zone is None:
        return croniter(expression, now).get_next(datetime)

    # Occurrences are generated on the local wall clock and compared in UTC:
    # inside a fall-back hour a wall-clock time can already lie in the past.
    wall_clock = croniter(expression, now.astimezone(zone).replace(tzinfo=None, fold=0))
    now_utc = now.astimezone(timezone.utc)
    for _ in range(3):
        candidate = wall_clock.get_next(datetime).replace(tzinfo=zone, fold=0)
        if candidate.astimezone(timezone.utc) > now_utc:
            return candidate.astimezone(now.tzinfo)
    return None


def describe_schedule(trigger_config: Any) -> str:
    frequency = schedule_frequency(trigger_config)
    run_time = parse_time_of_day(trigger_config.get("time")) if frequency else None
    if frequency is None or run_time is None:
        return "No valid schedule configured"
    clock = run_time.strftime("%H:%M")
    if frequency == "weekly":
        day_index = parse_day_of_week(trigger_config.get("day_of_week"))
        if day_index is None:
            return "No valid schedule configured"
        return f"weekly on {WEEKDAY_NAMES[day_index].capitalize()} at {clock}"
    if frequency == "monthly":
        return f"monthly on day {trigger_config.get('day_of_month')} at {clock}"
    if frequency == "weekdays":
        return f"on weekdays at {clock}"
    return f"daily at {clock}"
