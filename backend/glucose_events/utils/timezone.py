import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from glucose_events.core.errors import ValidationError

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    """
    Returns the ZoneInfo for an IANA name.
    Falls back to UTC when the name is blank or unknown.
    """
    if not name or not name.strip():
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Could not resolve timezone '%s'. Falling back to UTC.", name)
        return ZoneInfo("UTC")


def ensure_utc(dt: datetime, field: str = "timestamp") -> datetime:
    """
    Normalizes an aware datetime to UTC.
    Naive datetimes are rejected: the core never guesses an offset.
    """
    if dt.tzinfo is None or dt.utcoffset() is None:
        raise ValidationError(f"{field} must be timezone-aware, got naive {dt.isoformat()}")
    utc_dt = dt.astimezone(timezone.utc)
    if utc_dt < EPOCH:
        raise ValidationError(f"{field} {utc_dt.isoformat()} is before the epoch")
    return utc_dt


def to_local(dt: datetime, tz: ZoneInfo) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(tz)


def format_time(dt: datetime, tz: ZoneInfo) -> str:
    """
    Returns HH:MM in local time.
    """
    return to_local(dt, tz).strftime("%H:%M")


def format_datetime(dt: datetime, tz: ZoneInfo) -> str:
    """
    Returns YYYY-MM-DD HH:MM in local time.
    """
    return to_local(dt, tz).strftime("%Y-%m-%d %H:%M")


def local_date_of(dt: datetime, tz: ZoneInfo) -> date:
    return to_local(dt, tz).date()


def day_bounds_utc(local_day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """
    UTC instants of local midnight and the following local midnight.
    The span is 23 or 25 hours on DST transition days.
    """
    start_local = datetime.combine(local_day, time.min, tzinfo=tz)
    end_local = datetime.combine(local_day + timedelta(days=1), time.min, tzinfo=tz)
    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)
