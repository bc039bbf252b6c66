"""
Date truncation for Unix-ms timestamps.

truncate() rounds a timestamp down to the start of a calendar part, in UTC.
It is used to bucket version history by period.

Week handling:
    - ISO_WEEK always starts on Monday
    - WEEK starts on `first_weekday` (Sunday by default)

Example:
    >>> ts = to_ms(datetime(2023, 5, 17, 11, 30, 15, tzinfo=timezone.utc))  # Wednesday
    >>> from_ms(truncate("iso_week", ts)).date()
    datetime.date(2023, 5, 15)
    >>> from_ms(truncate("week", ts)).date()
    datetime.date(2023, 5, 14)
"""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta, timezone
from enum import Enum

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_MS_PER_SECOND = 1000
_MS_PER_MINUTE = 60 * _MS_PER_SECOND
_MS_PER_HOUR = 60 * _MS_PER_MINUTE
_MS_PER_DAY = 24 * _MS_PER_HOUR


class DatePart(str, Enum):
    MILLISECOND = "millisecond"
    SECOND = "second"
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    DAYOFYEAR = "dayofyear"
    WEEK = "week"
    ISO_WEEK = "iso_week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"


def to_ms(dt: datetime) -> int:
    """Convert an aware datetime to Unix milliseconds."""
    return (dt - EPOCH) // timedelta(milliseconds=1)


def from_ms(ts_ms: int) -> datetime:
    """Convert Unix milliseconds to an aware UTC datetime."""
    return EPOCH + timedelta(milliseconds=ts_ms)


def truncate(
    part: DatePart | str,
    ts_ms: int,
    first_weekday: int = calendar.SUNDAY,
) -> int:
    """Truncate a timestamp to the start of the given part.

    Args:
        part: DatePart or its name (case-insensitive)
        ts_ms: Unix milliseconds
        first_weekday: First day of WEEK, 0=Monday .. 6=Sunday

    Returns:
        Truncated Unix milliseconds

    Raises:
        ValueError: If the part or first_weekday is unknown
    """
    if not isinstance(part, DatePart):
        try:
            part = DatePart(part.lower())
        except ValueError:
            names = ", ".join(p.value for p in DatePart)
            raise ValueError(f"Unknown date part '{part}'. Must be one of: {names}")
    if not 0 <= first_weekday <= 6:
        raise ValueError(f"first_weekday must be 0..6, got {first_weekday}")

    if part == DatePart.MILLISECOND:
        return ts_ms
    if part == DatePart.SECOND:
        return ts_ms - ts_ms % _MS_PER_SECOND
    if part == DatePart.MINUTE:
        return ts_ms - ts_ms % _MS_PER_MINUTE
    if part == DatePart.HOUR:
        return ts_ms - ts_ms % _MS_PER_HOUR

    day_start = ts_ms - ts_ms % _MS_PER_DAY
    if part in (DatePart.DAY, DatePart.DAYOFYEAR):
        return day_start

    day = from_ms(day_start)
    if part == DatePart.ISO_WEEK:
        return to_ms(day - timedelta(days=day.weekday()))
    if part == DatePart.WEEK:
        return to_ms(day - timedelta(days=(day.weekday() - first_weekday) % 7))
    if part == DatePart.MONTH:
        return to_ms(day.replace(day=1))
    if part == DatePart.QUARTER:
        return to_ms(day.replace(month=3 * ((day.month - 1) // 3) + 1, day=1))
    return to_ms(day.replace(month=1, day=1))
