from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    """Half-open timestamp window ``[start, end)`` in stored (naive UTC) time."""

    slug: str
    start: datetime
    end: datetime


def _first_of_next_month(year: int, month: int) -> datetime:
    if month == 12:
        return datetime(year + 1, 1, 1)
    return datetime(year, month + 1, 1)


def month_period(year: int, month: int) -> Period:
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    return Period("month", datetime(year, month, 1), _first_of_next_month(year, month))


def year_period(year: int) -> Period:
    return Period("year", datetime(year, 1, 1), datetime(year + 1, 1, 1))


def aggregation_period(year: int) -> Period:
    # Starts in November of the prior year so purchases billed into January
    # or February of ``year`` are seen.
    return Period("aggregation", datetime(year - 1, 11, 1), datetime(year + 1, 1, 1))


def comparison_period(year: int, month: Optional[int] = None) -> Period:
    if month is None:
        return year_period(year)
    return month_period(year, month)


def _local_midnight_as_utc(day: date, tz: ZoneInfo, beyond: datetime) -> datetime:
    # ``beyond`` is returned when the instant falls outside datetime's range
    try:
        local = datetime.combine(day, time.min, tzinfo=tz)
        return local.astimezone(timezone.utc).replace(tzinfo=None)
    except OverflowError:
        return beyond


def resolve_period(
    start: Optional[date],
    end: Optional[date],
    *,
    tz_name: Optional[str] = None,
) -> Period:
    """
    Window covering the local calendar days ``start``..``end`` inclusive,
    expressed in stored UTC time. Missing bounds stay open, and so do bounds
    at the edge of the calendar.
    """
    if start and end and start > end:
        raise ValueError("Start date must be before end date")
    tz = ZoneInfo(tz_name or get_settings().timezone)
    lower = datetime.min
    if start:
        lower = _local_midnight_as_utc(start, tz, datetime.min)
    upper = datetime.max
    if end and end < date.max:
        upper = _local_midnight_as_utc(end + timedelta(days=1), tz, datetime.max)
    return Period("custom", lower, upper)
