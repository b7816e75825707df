"""
Repository pattern for data access.

Handles persistence of copilot sessions, events and summaries, including the
conditional session update that serializes racing lifecycle transitions and
the scoped bulk delete used by purge and retention.
"""

import json
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from copilot_guard.core.clock import parse_iso, to_iso
from copilot_guard.core.errors import UnscopedDeleteError
from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    CopilotEvent,
    CopilotSession,
    CopilotSummary,
    EventType,
    SessionStatus,
    TERMINAL_STATUSES,
)

# Entity class -> table name. Bulk deletes are only possible on these.
ENTITY_TABLES = {
    "events": "copilot_events",
    "summaries": "copilot_summaries",
    "sessions": "copilot_sessions",
}

# Columns a lifecycle transition or heartbeat may change.
_UPDATABLE_SESSION_COLUMNS = {
    "status",
    "stopped_at",
    "duration_seconds",
    "consumed_minutes",
    "metadata",
}

_SESSION_COLUMNS = (
    "id, user_id, interview_session_id, title, status, metadata, started_at, "
    "stopped_at, duration_seconds, consumed_minutes, created_at, updated_at"
)


@dataclass(frozen=True)
class DeleteFilter:
    """Scope of a bulk delete.

    At least one of the fields must be set; a delete with an empty filter is
    rejected by the repository. `statuses` applies to sessions only, and
    `session_statuses` restricts events and summaries to rows whose parent
    session currently has one of those statuses.
    """
    user_id: Optional[str] = None
    statuses: Optional[Tuple[SessionStatus, ...]] = None
    created_before: Optional[datetime] = None
    session_statuses: Optional[Tuple[SessionStatus, ...]] = None

    @property
    def is_scoped(self) -> bool:
        return (
            bool(self.user_id)
            or bool(self.statuses)
            or bool(self.session_statuses)
            or self.created_before is not None
        )


@dataclass(frozen=True)
class DeleteResult:
    """Outcome of one bulk delete: rows removed, or the failure detail."""
    count: int = 0
    error: Optional[str] = None


@dataclass(frozen=True)
class SessionQuery:
    """Filters for listing a user's sessions."""
    status: Optional[str] = None
    mode: Optional[str] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the copilot tables if they don't exist.

    Events and summaries cascade with their session, so deleting a session
    never leaves orphaned stream rows behind.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS copilot_sessions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                interview_session_id TEXT,
                title TEXT,
                status TEXT NOT NULL DEFAULT 'active'
                    CHECK (status IN ('active', 'stopped', 'expired')),
                metadata TEXT NOT NULL DEFAULT '{}',
                started_at TEXT NOT NULL,
                stopped_at TEXT,
                duration_seconds INTEGER NOT NULL DEFAULT 0,
                consumed_minutes INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS copilot_events (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL
                    REFERENCES copilot_sessions(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                event_type TEXT NOT NULL
                    CHECK (event_type IN ('transcript', 'suggestion', 'system')),
                payload TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS copilot_summaries (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL
                    REFERENCES copilot_sessions(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                summary_type TEXT NOT NULL DEFAULT 'final',
                content TEXT,
                payload TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (session_id, summary_type)
            );

            CREATE TABLE IF NOT EXISTS copilot_usage_counters (
                user_id TEXT NOT NULL,
                counter_type TEXT NOT NULL,
                period_key TEXT NOT NULL,
                used INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (user_id, counter_type, period_key)
            );

            CREATE INDEX IF NOT EXISTS copilot_sessions_user_id_created_at_idx
                ON copilot_sessions(user_id, created_at DESC);
            CREATE INDEX IF NOT EXISTS copilot_sessions_user_id_status_idx
                ON copilot_sessions(user_id, status, started_at DESC);
            CREATE INDEX IF NOT EXISTS copilot_events_session_id_created_at_idx
                ON copilot_events(session_id, created_at ASC, id ASC);
            CREATE INDEX IF NOT EXISTS copilot_events_user_id_created_at_idx
                ON copilot_events(user_id, created_at DESC);
            CREATE INDEX IF NOT EXISTS copilot_summaries_session_id_idx
                ON copilot_summaries(session_id, created_at DESC);
        """)
        conn.commit()
    finally:
        conn.close()


class CopilotRepository:
    """Repository for copilot sessions, events and summaries.

    Every method opens its own short-lived connection, so each request unit
    re-reads session truth from the database.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    # Sessions

    def insert_session(
        self,
        user_id: str,
        metadata: Dict[str, Any],
        started_at: datetime,
        title: Optional[str] = None,
        interview_session_id: Optional[str] = None,
    ) -> CopilotSession:
        """Insert a new active session and return it as stored."""
        session_id = str(uuid.uuid4())
        now_iso = to_iso(started_at)
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO copilot_sessions
                (id, user_id, interview_session_id, title, status, metadata,
                 started_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    user_id,
                    interview_session_id,
                    title,
                    SessionStatus.ACTIVE.value,
                    json.dumps(metadata),
                    now_iso,
                    now_iso,
                    now_iso,
                ),
            )
            conn.commit()
        finally:
            conn.close()
        session = self.get_session(session_id)
        if session is None:
            raise sqlite3.DatabaseError(f"Session {session_id} missing after insert")
        return session

    def get_session(self, session_id: str) -> Optional[CopilotSession]:
        """Fetch a session by id, or None if it does not exist."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM copilot_sessions WHERE id = ?",
                (session_id,),
            ).fetchone()
            return _row_to_session(row) if row else None
        finally:
            conn.close()

    def update_session_if_status(
        self,
        session_id: str,
        user_id: str,
        expected_status: SessionStatus,
        changes: Dict[str, Any],
        at: datetime,
    ) -> int:
        """Conditionally update a session.

        The write applies only while the row still has `expected_status`
        and belongs to `user_id`. Two writers racing on the same session are
        serialized by this predicate: the loser affects zero rows.

        Args:
            session_id: Session to update
            user_id: Owner the session must belong to
            expected_status: Status the row must currently have
            changes: Column -> new value, restricted to lifecycle columns
            at: Timestamp recorded as updated_at

        Returns:
            Number of rows affected (0 or 1)

        Raises:
            ValueError: If changes names a column that may not be updated
        """
        unknown = set(changes) - _UPDATABLE_SESSION_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update session columns: {sorted(unknown)}")
        if not changes:
            raise ValueError("changes cannot be empty")

        assignments = []
        params: List[Any] = []
        for column in sorted(changes):
            assignments.append(f"{column} = ?")
            params.append(_to_column_value(changes[column]))
        assignments.append("updated_at = ?")
        params.append(to_iso(at))
        params.extend([session_id, user_id, expected_status.value])

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"UPDATE copilot_sessions SET {', '.join(assignments)} "
                "WHERE id = ? AND user_id = ? AND status = ?",
                params,
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def list_sessions(
        self,
        user_id: str,
        query: SessionQuery,
        offset: int,
        limit: int,
    ) -> Tuple[List[CopilotSession], int]:
        """List a user's sessions newest first with the total match count."""
        where, params = _session_query_clause(user_id, query)
        conn = get_connection(self.db_path)
        try:
            total = conn.execute(
                f"SELECT COUNT(*) FROM copilot_sessions WHERE {where}", params
            ).fetchone()[0]
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM copilot_sessions WHERE {where} "
                "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                params + [limit, offset],
            ).fetchall()
            return [_row_to_session(row) for row in rows], total
        finally:
            conn.close()

    def list_session_usage(
        self, user_id: str, query: SessionQuery
    ) -> List[Tuple[int, int]]:
        """Return (duration_seconds, consumed_minutes) for every matching session."""
        where, params = _session_query_clause(user_id, query)
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT duration_seconds, consumed_minutes FROM copilot_sessions "
                f"WHERE {where}",
                params,
            ).fetchall()
            return [(row[0], row[1]) for row in rows]
        finally:
            conn.close()

    def list_active_sessions(self, user_id: str) -> List[CopilotSession]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM copilot_sessions "
                "WHERE user_id = ? AND status = ?",
                (user_id, SessionStatus.ACTIVE.value),
            ).fetchall()
            return [_row_to_session(row) for row in rows]
        finally:
            conn.close()

    # Events

    def insert_event(
        self,
        session_id: str,
        user_id: str,
        event_type: EventType,
        payload: Dict[str, Any],
        created_at: datetime,
    ) -> CopilotEvent:
        """Append an event to a session's stream."""
        event = CopilotEvent(
            id=str(uuid.uuid4()),
            session_id=session_id,
            user_id=user_id,
            event_type=event_type,
            payload=payload,
            created_at=parse_iso(to_iso(created_at)),
        )
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO copilot_events
                (id, session_id, user_id, event_type, payload, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.session_id,
                    event.user_id,
                    event.event_type.value,
                    json.dumps(event.payload),
                    to_iso(event.created_at),
                ),
            )
            conn.commit()
            return event
        finally:
            conn.close()

    def fetch_events(
        self,
        session_id: str,
        after: Optional[Tuple[datetime, str]] = None,
        event_type: Optional[EventType] = None,
        limit: int = 200,
        newest_first: bool = False,
    ) -> List[CopilotEvent]:
        """Fetch a session's events ordered by (created_at, id).

        Args:
            session_id: Session whose stream to read
            after: Optional (created_at, id) position; only rows strictly
                after it are returned, with id breaking timestamp ties
            event_type: Optional filter on the event type
            limit: Maximum number of rows
            newest_first: Reverse the ordering

        Returns:
            List of events
        """
        conditions = ["session_id = ?"]
        params: List[Any] = [session_id]
        if after is not None:
            after_iso = to_iso(after[0])
            conditions.append("(created_at > ? OR (created_at = ? AND id > ?))")
            params.extend([after_iso, after_iso, after[1]])
        if event_type is not None:
            conditions.append("event_type = ?")
            params.append(event_type.value)
        direction = "DESC" if newest_first else "ASC"
        params.append(limit)

        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT id, session_id, user_id, event_type, payload, created_at "
                f"FROM copilot_events WHERE {' AND '.join(conditions)} "
                f"ORDER BY created_at {direction}, id {direction} LIMIT ?",
                params,
            ).fetchall()
            return [_row_to_event(row) for row in rows]
        finally:
            conn.close()

    # Summaries

    def upsert_summary(
        self,
        session_id: str,
        user_id: str,
        summary_type: str,
        content: Optional[str],
        payload: Dict[str, Any],
        at: datetime,
    ) -> CopilotSummary:
        """Create or replace the summary of the given type for a session."""
        at_iso = to_iso(at)
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO copilot_summaries
                (id, session_id, user_id, summary_type, content, payload,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (session_id, summary_type) DO UPDATE SET
                    content = excluded.content,
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (
                    str(uuid.uuid4()),
                    session_id,
                    user_id,
                    summary_type,
                    content,
                    json.dumps(payload),
                    at_iso,
                    at_iso,
                ),
            )
            conn.commit()
            row = conn.execute(
                "SELECT id, session_id, user_id, summary_type, content, payload, "
                "created_at, updated_at FROM copilot_summaries "
                "WHERE session_id = ? AND summary_type = ?",
                (session_id, summary_type),
            ).fetchone()
        finally:
            conn.close()
        return _row_to_summary(row)

    def list_summaries(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        summary_types: Optional[Sequence[str]] = None,
        newest_first: bool = False,
        limit: Optional[int] = None,
    ) -> List[CopilotSummary]:
        """List a user's summaries, optionally for one session and of given types.

        Oldest first by created_at, or most recently updated first with
        newest_first.
        """
        conditions = ["user_id = ?"]
        params: List[Any] = [user_id]
        if session_id is not None:
            conditions.append("session_id = ?")
            params.append(session_id)
        if summary_types:
            conditions.append(f"summary_type IN ({', '.join('?' for _ in summary_types)})")
            params.extend(summary_types)
        order = "updated_at DESC, id DESC" if newest_first else "created_at ASC, id ASC"
        sql = (
            "SELECT id, session_id, user_id, summary_type, content, payload, "
            f"created_at, updated_at FROM copilot_summaries WHERE {' AND '.join(conditions)} "
            f"ORDER BY {order}"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        conn = get_connection(self.db_path)
        try:
            return [_row_to_summary(row) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    # Export

    def list_user_sessions(self, user_id: str) -> List[CopilotSession]:
        """Every session of a user, oldest first."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM copilot_sessions WHERE user_id = ? "
                "ORDER BY created_at ASC, id ASC",
                (user_id,),
            ).fetchall()
            return [_row_to_session(row) for row in rows]
        finally:
            conn.close()

    def list_user_events(self, user_id: str) -> List[CopilotEvent]:
        """Every event of a user across sessions, ordered by (created_at, id)."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT id, session_id, user_id, event_type, payload, created_at "
                "FROM copilot_events WHERE user_id = ? ORDER BY created_at ASC, id ASC",
                (user_id,),
            ).fetchall()
            return [_row_to_event(row) for row in rows]
        finally:
            conn.close()

    # Deletion

    def delete_session_if_terminal(self, session_id: str, user_id: str) -> int:
        """Delete one stopped or expired session owned by `user_id`.

        Events and summaries go with it through the cascade. An active
        session is never matched, so a delete racing a live session affects
        zero rows.

        Returns:
            Number of sessions deleted (0 or 1)
        """
        statuses = [s.value for s in TERMINAL_STATUSES]
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM copilot_sessions WHERE id = ? AND user_id = ? "
                f"AND status IN ({', '.join('?' for _ in statuses)})",
                [session_id, user_id] + statuses,
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    # Bulk operations

    def count_rows(self, entity: str, scope: DeleteFilter) -> int:
        """Count rows a bulk delete with the same scope would remove."""
        table = _entity_table(entity)
        where, params = _delete_clause(entity, scope)
        conn = get_connection(self.db_path)
        try:
            return conn.execute(
                f"SELECT COUNT(*) FROM {table} WHERE {where}", params
            ).fetchone()[0]
        finally:
            conn.close()

    def bulk_delete(self, entity: str, scope: DeleteFilter) -> DeleteResult:
        """Delete every row of an entity class matching a scope.

        Store failures are returned in the result rather than raised, so the
        caller decides how to abort.

        Raises:
            UnscopedDeleteError: If the filter does not restrict the delete
            ValueError: If the entity class is unknown
        """
        table = _entity_table(entity)
        where, params = _delete_clause(entity, scope)
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"DELETE FROM {table} WHERE {where}", params)
            conn.commit()
            return DeleteResult(count=cursor.rowcount)
        except sqlite3.Error as e:
            conn.rollback()
            return DeleteResult(count=0, error=str(e))
        finally:
            conn.close()


def _entity_table(entity: str) -> str:
    if entity not in ENTITY_TABLES:
        raise ValueError(f"Unknown entity class: {entity}")
    return ENTITY_TABLES[entity]


def _delete_clause(entity: str, scope: DeleteFilter) -> Tuple[str, List[Any]]:
    if not scope.is_scoped:
        raise UnscopedDeleteError(entity)
    if scope.statuses and entity != "sessions":
        raise ValueError(f"Status filter is only valid for sessions, not {entity}")
    if scope.session_statuses and entity == "sessions":
        raise ValueError("Parent status filter is not valid for sessions; use statuses")

    conditions = []
    params: List[Any] = []
    if scope.user_id:
        conditions.append("user_id = ?")
        params.append(scope.user_id)
    if scope.statuses:
        placeholders = ", ".join("?" for _ in scope.statuses)
        conditions.append(f"status IN ({placeholders})")
        params.extend(SessionStatus(s).value for s in scope.statuses)
    if scope.session_statuses:
        placeholders = ", ".join("?" for _ in scope.session_statuses)
        conditions.append(
            f"session_id IN (SELECT id FROM copilot_sessions WHERE status IN ({placeholders}))"
        )
        params.extend(SessionStatus(s).value for s in scope.session_statuses)
    if scope.created_before is not None:
        conditions.append("created_at < ?")
        params.append(to_iso(scope.created_before))
    return " AND ".join(conditions), params


def _session_query_clause(user_id: str, query: SessionQuery) -> Tuple[str, List[Any]]:
    conditions = ["user_id = ?"]
    params: List[Any] = [user_id]
    if query.status:
        conditions.append("status = ?")
        params.append(query.status)
    if query.mode:
        conditions.append("json_extract(metadata, '$.mode') = ?")
        params.append(query.mode)
    if query.created_from is not None:
        conditions.append("created_at >= ?")
        params.append(to_iso(query.created_from))
    if query.created_to is not None:
        conditions.append("created_at <= ?")
        params.append(to_iso(query.created_to))
    return " AND ".join(conditions), params


def _to_column_value(value: Any) -> Any:
    if isinstance(value, SessionStatus):
        return value.value
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, dict):
        return json.dumps(value)
    return value


def _load_json(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}


def _row_to_session(row: Sequence[Any]) -> CopilotSession:
    return CopilotSession(
        id=row["id"],
        user_id=row["user_id"],
        interview_session_id=row["interview_session_id"],
        title=row["title"],
        status=SessionStatus(row["status"]),
        metadata=_load_json(row["metadata"]),
        started_at=parse_iso(row["started_at"]),
        stopped_at=parse_iso(row["stopped_at"]),
        duration_seconds=row["duration_seconds"],
        consumed_minutes=row["consumed_minutes"],
        created_at=parse_iso(row["created_at"]),
        updated_at=parse_iso(row["updated_at"]),
    )


def _row_to_summary(row: Sequence[Any]) -> CopilotSummary:
    return CopilotSummary(
        id=row["id"],
        session_id=row["session_id"],
        user_id=row["user_id"],
        summary_type=row["summary_type"],
        content=row["content"],
        payload=_load_json(row["payload"]),
        created_at=parse_iso(row["created_at"]),
        updated_at=parse_iso(row["updated_at"]),
    )


def _row_to_event(row: Sequence[Any]) -> CopilotEvent:
    return CopilotEvent(
        id=row["id"],
        session_id=row["session_id"],
        user_id=row["user_id"],
        event_type=EventType(row["event_type"]),
        payload=_load_json(row["payload"]),
        created_at=parse_iso(row["created_at"]),
    )
