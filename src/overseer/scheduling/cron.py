"""Cron expression evaluation on top of croniter.

Only the classic 5-field grammar (minute hour day month weekday) is accepted.
Schedules are evaluated in the job's IANA timezone and always returned in UTC.
"""

from __future__ import annotations

from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter  # type: ignore[import-untyped]

from overseer.scheduling.errors import InvalidScheduleExpression

CRON_FIELD_COUNT = 5
_DAY_NAMES = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")


def resolve_timezone(name: str) -> ZoneInfo:
    """Return the IANA zone or raise `InvalidScheduleExpression`."""

    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidScheduleExpression(f"Unknown timezone: {name!r}") from exc


def validate_expression(expression: str, timezone: str = "UTC") -> None:
    """Raise `InvalidScheduleExpression` if the schedule cannot be evaluated."""

    fields = expression.split()
    if len(fields) != CRON_FIELD_COUNT:
        raise InvalidScheduleExpression(
            f"Cron expression must have {CRON_FIELD_COUNT} fields, "
            f"got {len(fields)}: {expression!r}",
        )
    if not croniter.is_valid(" ".join(fields)):
        raise InvalidScheduleExpression(f"Invalid cron expression: {expression!r}")
    resolve_timezone(timezone)


def is_valid_expression(expression: str) -> bool:
    try:
        validate_expression(expression)
    except InvalidScheduleExpression:
        return False
    return True


def next_fire_time(expression: str, timezone: str, after: datetime) -> datetime:
    """Return the first fire time strictly after `after`, as an aware UTC datetime.

    Naive `after` values are interpreted as UTC. The result only depends on the
    arguments, so repeated calls with the same input agree.
    """

    validate_expression(expression, timezone)
    zone = resolve_timezone(timezone)
    if after.tzinfo is None:
        after = after.replace(tzinfo=UTC)
    local_after = after.astimezone(zone)
    try:
        upcoming = croniter(" ".join(expression.split()), local_after).get_next(datetime)
    except (ValueError, KeyError) as exc:
        raise InvalidScheduleExpression(f"Invalid cron expression: {expression!r}") from exc
    return upcoming.astimezone(UTC)


def describe(expression: str, timezone: str = "UTC") -> str:
    """Best-effort human readable schedule; falls back to the raw expression."""

    fields = expression.split()
    if len(fields) != CRON_FIELD_COUNT:
        return expression
    minute, hour, day_of_month, month, day_of_week = fields
    calendar_open = day_of_month == "*" and month == "*"

    if fields == ["*"] * CRON_FIELD_COUNT:
        return "Every minute"
    if minute.isdigit() and hour == "*" and calendar_open and day_of_week == "*":
        return f"Every hour at minute {minute}"
    if minute.isdigit() and hour.isdigit() and calendar_open:
        clock = f"{hour.zfill(2)}:{minute.zfill(2)} {timezone}"
        if day_of_week == "*":
            return f"Daily at {clock}"
        return f"{_describe_days(day_of_week)} at {clock}"
    return expression


def _describe_days(day_of_week: str) -> str:
    names = []
    for item in day_of_week.split(","):
        if item.isdigit() and int(item) < len(_DAY_NAMES) + 1:
            names.append(_DAY_NAMES[int(item) % len(_DAY_NAMES)])
        else:
            names.append(item)
    return ", ".join(names)
