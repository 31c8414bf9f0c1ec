"""Derived time values of maintenance requests.

Both helpers are pure. SQLite hands datetimes back without tzinfo, so naive
values are read as UTC before any comparison or subtraction.
"""

from __future__ import annotations

from datetime import UTC, datetime

SECONDS_PER_HOUR = 3600


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def is_overdue(scheduled_date: datetime | None, now: datetime) -> bool:
    """Return True when a scheduled date has already passed.

    Stage gating (only NEW and IN_PROGRESS requests can be overdue) is left to
    the caller.
    """
    if scheduled_date is None:
        return False
    return as_utc(scheduled_date) < as_utc(now)


def duration_hours(start: datetime | None, end: datetime | None) -> float | None:
    """Elapsed hours between ``start`` and ``end`` rounded to two decimals.

    ``None`` when either bound is missing. A negative value is returned as-is
    when ``end`` precedes ``start``.
    """
    if start is None or end is None:
        return None
    elapsed = as_utc(end) - as_utc(start)
    return round(elapsed.total_seconds() / SECONDS_PER_HOUR, 2)
