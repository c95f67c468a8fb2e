"""
Time helpers shared by the scheduling engine.

All engine timestamps are timezone-aware UTC. Precision is whole minutes:
durations are derived by rounding half up, the same way a wall-clock
countdown displays them.
"""
import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    """Current time as an aware UTC datetime. Default clock for the engine."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC.

    Naive values are assumed to already be UTC (SQLite drops tzinfo on read).
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def minutes_between(start: datetime, end: datetime) -> int:
    """
    Whole minutes from start to end, rounded half up.

    Negative when end precedes start.
    """
    seconds = (end - start).total_seconds()
    return math.floor(seconds / 60 + 0.5)


def add_minutes(value: datetime, minutes: int) -> datetime:
    """Shift a timestamp by a (possibly negative) number of minutes."""
    return value + timedelta(minutes=minutes)


def local_wall_time(
    reference: datetime,
    hour: int,
    tz_name: str,
    day_offset: int = 0,
) -> datetime:
    """
    Fixed local clock time on the reference's local date, returned as UTC.

    Args:
        reference: Instant whose local calendar date anchors the result
        hour: Local hour of day (0-23)
        tz_name: IANA timezone name
        day_offset: Days to add to the anchor date (1 = following day)

    Returns:
        Aware UTC datetime for ``hour``:00 local time on the anchored date

    Example:
        local_wall_time(start, 22, "Europe/London")      # bedtime on start date
        local_wall_time(start, 7, "Europe/London", 1)    # wakeup the next day
    """
    tz = ZoneInfo(tz_name)
    local_date: date = ensure_utc(reference).astimezone(tz).date() + timedelta(days=day_offset)
    local = datetime.combine(local_date, time(hour=hour), tzinfo=tz)
    return local.astimezone(timezone.utc)
