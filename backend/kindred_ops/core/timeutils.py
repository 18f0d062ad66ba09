"""UTC time helpers shared by models and services."""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime read back from the database.

    SQLite returns naive datetimes even for timezone-aware columns; every
    timestamp we write is UTC, so a naive value is tagged as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_utc_day(now: Optional[datetime] = None) -> datetime:
    """Midnight (UTC) of the day containing ``now``."""
    now = as_utc(now) if now else utc_now()
    return now.replace(hour=0, minute=0, second=0, microsecond=0)
