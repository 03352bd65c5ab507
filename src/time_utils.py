"""Time helpers for UTC storage and duration arithmetic."""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Convert a datetime to UTC, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def seconds_between(start: datetime, end: datetime) -> int:
    """Return whole seconds from start to end, truncated toward zero."""
    return int((ensure_utc(end) - ensure_utc(start)).total_seconds())


def whole_days_between(start: datetime, end: datetime) -> int:
    """Return the number of complete days between two instants."""
    return (ensure_utc(end) - ensure_utc(start)).days
