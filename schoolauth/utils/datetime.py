"""Timezone helpers for session timestamps."""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return current UTC time as an aware datetime."""
    return datetime.now(timezone.utc)


def ensure_timezone(dt: datetime | None) -> datetime | None:
    """Ensure a datetime is timezone-aware in UTC (SQLite drops tzinfo)."""
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)
