"""Calendar helpers shared by pricing, lifecycle and installments."""

import calendar
from datetime import datetime, timedelta, timezone

ONE_DAY = timedelta(days=1)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so every comparison is between aware values."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's end.

    Jan 31 + 1 month is Feb 28 (or 29), never Mar 3.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def whole_months_between(start: datetime, end: datetime) -> int:
    """Number of full calendar months from ``start`` to ``end`` (0 if end <= start)."""
    if end <= start:
        return 0
    months = (end.year - start.year) * 12 + (end.month - start.month)
    while months > 0 and add_months(start, months) > end:
        months -= 1
    return months


def whole_days_between(start: datetime, end: datetime) -> int:
    """Floor of elapsed days; negative when ``end`` precedes ``start``."""
    return (end - start) // ONE_DAY
