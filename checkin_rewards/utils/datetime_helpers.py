"""
Date/time helpers for the check-in engine

CRITICAL RULES:
- All timestamps handled by the engine are timezone-aware UTC
- Naive datetimes coming from storage are assumed to be UTC
- Day boundaries for "next check-in" are computed in the user's timezone
"""

import logging
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

# Default timezone if none is configured
DEFAULT_TIMEZONE = "UTC"


def now_utc() -> datetime:
    """
    Get current datetime in UTC (timezone-aware)

    Returns:
        Current datetime in UTC with timezone info
    """
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """Normalize a datetime to aware UTC; naive values are treated as UTC"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def resolve_timezone(tz_name: str | None) -> ZoneInfo:
    """Get ZoneInfo for a name, falling back to UTC on unknown names"""
    try:
        return ZoneInfo(tz_name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError) as e:
        logger.error(f"Invalid timezone '{tz_name}': {e}")
        return ZoneInfo(DEFAULT_TIMEZONE)


def next_day_start(now: datetime, tz_name: str | None = DEFAULT_TIMEZONE) -> datetime:
    """
    Start of the day after `now`, in the given timezone, returned as UTC

    Example:
        2024-03-10 15:00 UTC, tz "UTC" -> 2024-03-11 00:00 UTC
    """
    tz = resolve_timezone(tz_name)
    local_now = to_utc(now).astimezone(tz)
    tomorrow = local_now.date() + timedelta(days=1)
    local_midnight = datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=tz)
    return local_midnight.astimezone(timezone.utc)


def hours_between(earlier: datetime, later: datetime) -> float:
    """Elapsed hours between two instants (negative if `later` is earlier)"""
    return (to_utc(later) - to_utc(earlier)).total_seconds() / 3600
