"""Next-occurrence computation for recurring scheduled messages."""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from croniter import croniter

from shared.schemas.messaging import Recurrence


def _parse_time(value: str) -> tuple[int, int]:
    hours, minutes = value.split(":", 1)
    hour, minute = int(hours), int(minutes)
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"Invalid time of day: {value!r}")
    return hour, minute


def _at_time(dt: datetime, time_of_day: str | None) -> datetime:
    if not time_of_day:
        return dt
    hour, minute = _parse_time(time_of_day)
    return dt.replace(hour=hour, minute=minute, second=0, microsecond=0)


def _add_month(dt: datetime, day_of_month: int | None) -> datetime:
    year, month = (dt.year + 1, 1) if dt.month == 12 else (dt.year, dt.month + 1)
    last_day = calendar.monthrange(year, month)[1]
    day = min(day_of_month or dt.day, last_day)
    return dt.replace(year=year, month=month, day=day)


def calculate_next_run(
    recurrence: Recurrence,
    last_run: datetime,
    default_timezone: str = "UTC",
) -> datetime | None:
    """Return the next due time in UTC, or None when the series has ended.

    Wall-clock fields (``time``, weekdays, day of month) are interpreted in
    the recurrence's timezone. Weekdays use Monday=0. A day of month past the
    end of a short month is clamped to its last day.
    """
    if last_run.tzinfo is None:
        last_run = last_run.replace(tzinfo=timezone.utc)
    tz = ZoneInfo(recurrence.timezone or default_timezone)
    local = last_run.astimezone(tz)

    if recurrence.type == "once":
        return None

    if recurrence.type == "daily":
        candidate = _at_time(local + timedelta(days=1), recurrence.time)
    elif recurrence.type == "weekly":
        if not recurrence.days_of_week:
            return None
        days = set(recurrence.days_of_week)
        offset = next(i for i in range(1, 8) if (local.weekday() + i) % 7 in days)
        candidate = _at_time(local + timedelta(days=offset), recurrence.time)
    elif recurrence.type == "monthly":
        candidate = _at_time(_add_month(local, recurrence.day_of_month), recurrence.time)
    elif recurrence.type == "cron":
        candidate = croniter(recurrence.cron_expression, local).get_next(datetime)
    else:
        raise ValueError(f"Unknown recurrence type: {recurrence.type}")

    next_run = candidate.astimezone(timezone.utc)
    if recurrence.end_date is not None:
        end = recurrence.end_date
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)
        if next_run > end:
            return None
    return next_run
