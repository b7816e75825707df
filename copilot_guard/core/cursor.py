"""
Ordered pagination cursor for session event streams.

A cursor is an opaque "<created_at>::<id>" token naming the last row a client
has seen. Rows are ordered by the (created_at, id) tuple: the store's clock is
coarser than event arrival under load, so id breaks ties between rows sharing
an instant.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, TypeVar

from .clock import parse_iso, to_iso

CURSOR_SEPARATOR = "::"

T = TypeVar("T")


@dataclass(frozen=True)
class EventCursor:
    created_at: datetime
    id: str


def build_event_cursor(created_at: datetime, event_id: str) -> str:
    return f"{to_iso(created_at)}{CURSOR_SEPARATOR}{event_id}"


def cursor_for_event(row) -> str:
    """Resume token for a row exposing `created_at` and `id`."""
    return build_event_cursor(row.created_at, str(row.id))


def parse_event_cursor(raw: Optional[str]) -> Optional[EventCursor]:
    """Decode a cursor token.

    Returns None on empty input, a wrong number of separators, an empty
    component, or a timestamp that does not parse.
    """
    if not raw:
        return None
    parts = raw.split(CURSOR_SEPARATOR)
    if len(parts) != 2:
        return None
    created_raw, event_id = parts
    if not created_raw or not event_id:
        return None
    created_at = parse_iso(created_raw)
    if created_at is None:
        return None
    return EventCursor(created_at=created_at, id=event_id)


def is_event_after_cursor(row, cursor: EventCursor) -> bool:
    """True if `row` sorts strictly after the cursor position."""
    row_created = parse_iso(row.created_at)
    if row_created > cursor.created_at:
        return True
    if row_created < cursor.created_at:
        return False
    return str(row.id) > cursor.id


def filter_events_after_cursor(rows: Iterable[T], cursor: Optional[EventCursor]) -> List[T]:
    """Keep the rows strictly after the cursor, preserving their order.

    A None cursor means the first page and keeps every row.
    """
    if cursor is None:
        return list(rows)
    return [row for row in rows if is_event_after_cursor(row, cursor)]
