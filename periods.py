from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional
from zoneinfo import ZoneInfo


@dataclass(frozen=True)
class Period:
    slug: str
    start: datetime
    end: datetime


def _month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def month_period(
    year: Optional[int] = None,
    month: Optional[int] = None,
    *,
    today: Optional[date] = None,
) -> Period:
    """Calendar month window, inclusive at both ends.

    Missing year or month fall back to the month containing ``today``.
    """
    today = today or date.today()
    year = today.year if year is None else year
    month = today.month if month is None else month
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    if not 1 <= year <= 9999:
        raise ValueError("Year out of range")
    start = datetime.combine(date(year, month, 1), time(0, 0, 0))
    end = datetime.combine(_month_end(year, month), time(23, 59, 59))
    return Period(f"{year:04d}-{month:02d}", start, end)


def to_local_naive(value: datetime, timezone: str) -> datetime:
    """Naive wall-clock time in ``timezone``, truncated to whole seconds."""
    if value.tzinfo is not None:
        value = value.astimezone(ZoneInfo(timezone)).replace(tzinfo=None)
    return value.replace(microsecond=0)
