"""
Timezone helpers. Timestamps are stored and compared as aware UTC datetimes;
the portal's display timezone comes from settings.default_timezone.
"""
from datetime import datetime
import pytz

from ..core.config import settings


def get_display_tz():
    return pytz.timezone(settings.default_timezone)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(pytz.UTC)


def ensure_aware(dt: datetime) -> datetime:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt


def to_display_tz(dt: datetime) -> datetime:
    return ensure_aware(dt).astimezone(get_display_tz())


def format_local_time(dt: datetime, format_str: str = None) -> str:
    """Format a timestamp in the portal display timezone"""
    return to_display_tz(dt).strftime(format_str or settings.timezone_display_format)


def minutes_between(start: datetime, end: datetime) -> float:
    return (ensure_aware(end) - ensure_aware(start)).total_seconds() / 60
