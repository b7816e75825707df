"""
Timestamp helpers.

All timestamps handled by the engine are timezone-aware UTC datetimes. They
are persisted as fixed-width ISO-8601 strings so that lexical order in the
store matches chronological order.
"""

from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC. Naive values are assumed to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC ISO-8601 string."""
    return as_utc(value).isoformat(timespec="microseconds")


def parse_iso(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string into an aware UTC datetime.

    Returns None for anything that is not a parsable timestamp string.
    """
    if isinstance(value, datetime):
        return as_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    # fromisoformat only accepts the "Z" suffix from Python 3.11 on
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(raw))
    except ValueError:
        return None
