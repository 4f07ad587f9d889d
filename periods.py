"""Calendar helpers evaluated in the reporting timezone.

Every business rule (which month a budget belongs to, whether it is business
hours, whether today is the last day of the month) is answered against one
fixed civil timezone, never against the server's local clock.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def reporting_zone() -> ZoneInfo:
    return ZoneInfo(get_settings().timezone)


def to_reporting(instant: datetime) -> datetime:
    """Convert an instant to the reporting timezone; naive values are UTC."""
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(reporting_zone())


def current_instant() -> datetime:
    return datetime.now(timezone.utc).astimezone(reporting_zone())


def reporting_today(now: Optional[datetime] = None) -> date:
    return to_reporting(now or current_instant()).date()


def to_storage(instant: datetime) -> datetime:
    # DateTime columns hold naive UTC.
    if instant.tzinfo is None:
        return instant
    return instant.astimezone(timezone.utc).replace(tzinfo=None)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def month_key(instant: datetime) -> str:
    local = to_reporting(instant)
    return f"{local.year:04d}-{local.month:02d}"


def parse_month_key(key: str) -> tuple[int, int]:
    try:
        year_str, month_str = key.split("-", 1)
        year, month = int(year_str), int(month_str)
    except (AttributeError, ValueError) as exc:
        raise ValueError(f"Invalid month: {key!r}") from exc
    if len(year_str) != 4 or len(month_str) != 2 or not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {key!r}")
    return year, month


def _month_end_date(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def month_period(key: str) -> Period:
    year, month = parse_month_key(key)
    return Period(key, date(year, month, 1), _month_end_date(year, month))


def month_range(key: str) -> tuple[datetime, datetime]:
    period = month_period(key)
    tz = reporting_zone()
    start = datetime.combine(period.start, time.min, tzinfo=tz)
    end = datetime.combine(period.end, time(23, 59, 59, 999000), tzinfo=tz)
    return start, end


def is_business_hour(
    instant: datetime, hours: Optional[tuple[int, int]] = None
) -> bool:
    start, end = hours or get_settings().business_hours
    return start <= to_reporting(instant).hour < end


def is_last_day_of_month(instant: datetime) -> bool:
    tomorrow = to_reporting(instant).date() + timedelta(days=1)
    return tomorrow.day == 1
