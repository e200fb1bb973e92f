"""Time utilities for calendar-day windows and timezone handling."""
from datetime import date, datetime, timedelta, timezone
from typing import Optional
import pytz


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def local_today(timezone_str: str, now: Optional[datetime] = None) -> date:
    """
    Get the calendar date in a local timezone.

    Args:
        timezone_str: pytz timezone name
        now: Reference moment (defaults to current time)

    Returns:
        Local calendar date at `now`
    """
    if now is None:
        now = utc_now()
    tz = pytz.timezone(timezone_str)
    return now.astimezone(tz).date()


def next_local_midnight(timezone_str: str, now: Optional[datetime] = None) -> datetime:
    """
    Get the next local midnight as an aware UTC datetime.

    DST transitions are resolved by pytz localize, so the boundary always
    falls on the wall-clock start of the next local day.
    """
    if now is None:
        now = utc_now()
    tz = pytz.timezone(timezone_str)
    tomorrow = now.astimezone(tz).date() + timedelta(days=1)
    midnight = tz.localize(datetime(tomorrow.year, tomorrow.month, tomorrow.day))
    return midnight.astimezone(timezone.utc)


def years_before(moment: datetime, years: int) -> datetime:
    """Same calendar moment `years` earlier; Feb 29 falls back to Feb 28."""
    try:
        return moment.replace(year=moment.year - years)
    except ValueError:
        return moment.replace(year=moment.year - years, day=28)


def minutes_between(start: datetime, end: datetime) -> float:
    """Minutes elapsed from start to end (negative if end is earlier)."""
    return (end - start).total_seconds() / 60


def ensure_aware(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO string or epoch seconds into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return ensure_aware(datetime.fromisoformat(value))
