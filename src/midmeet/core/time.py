"""
Timestamps.

MidMeet stores and publishes timezone-aware UTC datetimes only. Relational backends
(SQLite in particular) hand naive datetimes back, so anything read from storage goes
through `ensure_utc`.
"""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
