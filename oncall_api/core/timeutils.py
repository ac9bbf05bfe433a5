"""Local-time helpers for coverage windows, quiet hours and handoffs."""

import re
from datetime import date, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from oncall_api.logging_config import get_logger

logger = get_logger(__name__)

WEEKDAY_CODES = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")

_HHMM_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


def get_zone(name: str | None) -> ZoneInfo:
    """Return the named zone, falling back to UTC for unknown names."""
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone, using UTC", timezone=name)
        return ZoneInfo("UTC")


def to_local(instant: datetime, tz_name: str | None) -> datetime:
    """Convert an aware instant to wall-clock time in the named zone."""
    return instant.astimezone(get_zone(tz_name))


def local_date(instant: datetime, tz_name: str | None) -> date:
    return to_local(instant, tz_name).date()


def parse_hhmm(value: str | None) -> int | None:
    """Parse "HH:MM" into minutes since midnight, or None if invalid."""
    if not value:
        return None
    match = _HHMM_PATTERN.match(value.strip())
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        return None
    return hours * 60 + minutes


def minutes_into_day(local: datetime) -> int:
    return local.hour * 60 + local.minute


def weekday_code(local: datetime) -> str:
    return WEEKDAY_CODES[local.weekday()]


def in_daily_window(minute_of_day: int, start: int, end: int) -> bool:
    """True if minute_of_day is in [start, end).

    end < start wraps past midnight; start == end covers the whole day.
    """
    if start == end:
        return True
    if start < end:
        return start <= minute_of_day < end
    return minute_of_day >= start or minute_of_day < end
