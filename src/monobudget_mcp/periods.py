"""Financial month arithmetic.

A financial month starts on a configurable day of the calendar month and runs
until the day before the same day of the next month (5th to 4th, for example).
Start days past the end of a short month are clamped to its last day.

Days are local calendar days; timestamps are epoch seconds.
"""

import calendar
from datetime import date, datetime, time, timedelta

from .errors import ValidationError


def _as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def _check_start_day(start_day: int) -> None:
    if not isinstance(start_day, int) or not 1 <= start_day <= 31:
        raise ValidationError(f"financial month start day must be in 1..31, got {start_day!r}")


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def _clamped_day(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def financial_month_start(anchor: date | datetime, start_day: int = 1) -> date:
    """First day of the financial month containing anchor."""
    _check_start_day(start_day)
    anchor = _as_date(anchor)

    this_month_start = _clamped_day(anchor.year, anchor.month, start_day)
    if anchor >= this_month_start:
        return this_month_start

    year, month = _shift_month(anchor.year, anchor.month, -1)
    return _clamped_day(year, month, start_day)


def financial_month_end(anchor: date | datetime, start_day: int = 1) -> date:
    """Last day of the financial month containing anchor."""
    start = financial_month_start(anchor, start_day)
    year, month = _shift_month(start.year, start.month, 1)
    return _clamped_day(year, month, start_day) - timedelta(days=1)


def financial_month_bounds(anchor: date | datetime, start_day: int = 1) -> tuple[date, date]:
    """Return (first_day, last_day) of the financial month containing anchor."""
    return financial_month_start(anchor, start_day), financial_month_end(anchor, start_day)


def financial_month_timestamps(anchor: date | datetime, start_day: int = 1) -> tuple[int, int]:
    """Epoch bounds of the financial month: start 00:00:00 to end 23:59:59."""
    start, end = financial_month_bounds(anchor, start_day)
    return start_of_day_timestamp(start), end_of_day_timestamp(end)


def is_same_financial_month(first: date | datetime, second: date | datetime, start_day: int = 1) -> bool:
    """Check if two dates fall into the same financial month."""
    return financial_month_start(first, start_day) == financial_month_start(second, start_day)


def is_current_financial_month(value: date | datetime, start_day: int = 1, today: date | None = None) -> bool:
    """Check if value falls into the financial month containing today."""
    return is_same_financial_month(value, today or date.today(), start_day)


def each_day(start: date, end: date) -> list[date]:
    """All calendar days from start to end inclusive."""
    return [start + timedelta(days=offset) for offset in range((end - start).days + 1)]


def days_in_financial_month(anchor: date | datetime, start_day: int = 1) -> int:
    """Number of days in the financial month containing anchor (28-31)."""
    start, end = financial_month_bounds(anchor, start_day)
    return (end - start).days + 1


def start_of_day_timestamp(day: date) -> int:
    """Epoch seconds of local midnight starting day."""
    return int(datetime.combine(day, time.min).timestamp())


def end_of_day_timestamp(day: date) -> int:
    """Epoch seconds of the last second of day."""
    return int(datetime.combine(day, time(23, 59, 59)).timestamp())


def day_of(timestamp: int) -> date:
    """Local calendar day of an epoch timestamp."""
    return datetime.fromtimestamp(timestamp).date()


def calendar_month_timestamps(day: date) -> tuple[int, int]:
    """Epoch bounds of the calendar month containing day."""
    first = day.replace(day=1)
    last = day.replace(day=calendar.monthrange(day.year, day.month)[1])
    return start_of_day_timestamp(first), end_of_day_timestamp(last)


def shift_months(day: date, months: int) -> date:
    """Move day by a number of calendar months, clamping the day of month."""
    year, month = _shift_month(day.year, day.month, months)
    return _clamped_day(year, month, day.day)
