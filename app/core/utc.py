"""
UTC DateTime Utilities for Casa Agent Core.

All datetimes are stored and compared in UTC with timezone awareness.
SQLite hands back naive datetimes, so anything read from the store goes
through to_utc() before comparison.
"""

import math
from datetime import date, datetime, timedelta, timezone


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    This is the standard function for all timestamps.

    Example:
        from app.core.utc import utc_now

        created_at = utc_now()  # 2025-12-08 03:00:00+00:00
    """
    return datetime.now(timezone.utc)


def utc_today() -> date:
    """Current calendar date in UTC."""
    return utc_now().date()


def utc_now_iso() -> str:
    """
    Get current UTC time as ISO 8601 string with Z suffix.

    Returns format: "2025-12-08T03:00:00.123456Z"
    """
    return to_iso(utc_now())


def to_utc(dt: datetime) -> datetime:
    """
    Convert a datetime to UTC timezone-aware datetime.

    - If naive: assumes UTC and adds timezone
    - If aware: converts to UTC
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Serialize a datetime as UTC ISO 8601 with Z suffix."""
    return to_utc(dt).isoformat().replace("+00:00", "Z")


def parse_iso(iso_string: str) -> datetime:
    """
    Parse ISO 8601 datetime string to timezone-aware UTC datetime.

    Handles:
    - "2025-12-08T03:00:00Z"
    - "2025-12-08T03:00:00+00:00"
    - "2025-12-08T03:00:00" (assumes UTC)
    """
    cleaned = iso_string.replace("Z", "+00:00")
    return to_utc(datetime.fromisoformat(cleaned))


def days_ago(days: int, now: datetime | None = None) -> datetime:
    """Start of a trailing window of `days` days."""
    return (now or utc_now()) - timedelta(days=days)


def days_until(target: date, now: datetime | None = None) -> int:
    """
    Whole days from now until the start of `target`, rounded up.

    A lease ending tomorrow at midnight is 1 day out even if only a few
    hours remain.
    """
    current = to_utc(now or utc_now())
    target_start = datetime(target.year, target.month, target.day, tzinfo=timezone.utc)
    return math.ceil((target_start - current).total_seconds() / 86400)
