"""
Helper Functions
================

Common utility functions used across the application.
"""

from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """Get current UTC datetime with timezone info."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_date(date_str: str) -> datetime:
    """Parse ISO 8601 date string to datetime."""
    return ensure_utc(datetime.fromisoformat(date_str.replace("Z", "+00:00")))


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a store timestamp.

    Stores send epoch milliseconds as ints or numeric strings, and
    occasionally ISO 8601 strings. Anything unparseable is None.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        if isinstance(value, str) and value:
            if value.isdigit():
                return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
            return parse_date(value)
    except (OverflowError, OSError, ValueError):
        return None
    return None
