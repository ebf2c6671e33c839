"""Timestamp helpers shared by the metadata layer."""

from __future__ import annotations

from datetime import datetime, timezone


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for storage and JSON serialization."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def now_iso() -> str:
    return format_iso(now_utc())


def millis_from_timestamp(ts: float) -> int:
    """Convert a POSIX timestamp in seconds (``st_mtime``) to whole milliseconds."""
    return int(ts * 1000)
