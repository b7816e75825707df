"""
Unit tests for storage layer.

Tests schema creation, conditional session updates, event reads and scoped
bulk deletes.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from copilot_guard.core.errors import UnscopedDeleteError
from copilot_guard.storage.db import get_connection
from copilot_guard.storage.models import EventType, SessionStatus
from copilot_guard.storage.rate_limit import FixedWindowRateLimiter
from copilot_guard.storage.repository import (
    CopilotRepository,
    DeleteFilter,
    SessionQuery,
    initialize_schema,
)

T0 = datetime(2024, 5, 1, 9, 0, 0, tzinfo=timezone.utc)


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify tables are created and creation is repeatable."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                rows = conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
                ).fetchall()
                names = [row[0] for row in rows]
            finally:
                conn.close()

            assert names == [
                "copilot_events",
                "copilot_sessions",
                "copilot_summaries",
                "copilot_usage_counters",
            ]


class RepositoryTestCase:
    """Shared temp-database setup."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = CopilotRepository(self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestSessions(RepositoryTestCase):
    """Test session persistence."""

    def test_insert_and_get(self):
        session = self.repository.insert_session(
            "u1", {"mode": "coding"}, T0, title="Mock interview"
        )

        loaded = self.repository.get_session(session.id)
        assert loaded == session
        assert loaded.status is SessionStatus.ACTIVE
        assert loaded.metadata == {"mode": "coding"}
        assert loaded.started_at == T0

    def test_get_missing_session(self):
        assert self.repository.get_session("nope") is None

    def test_conditional_update_applies_once(self):
        """Test the second of two racing writers affects no rows."""
        session = self.repository.insert_session("u1", {}, T0)
        changes = {"status": SessionStatus.STOPPED, "stopped_at": T0}

        first = self.repository.update_session_if_status(
            session.id, "u1", SessionStatus.ACTIVE, changes, at=T0
        )
        second = self.repository.update_session_if_status(
            session.id, "u1", SessionStatus.ACTIVE,
            {"status": SessionStatus.EXPIRED}, at=T0
        )

        assert first == 1
        assert second == 0
        assert self.repository.get_session(session.id).status is SessionStatus.STOPPED

    def test_conditional_update_checks_owner(self):
        session = self.repository.insert_session("u1", {}, T0)

        rows = self.repository.update_session_if_status(
            session.id, "intruder", SessionStatus.ACTIVE, {"metadata": {}}, at=T0
        )

        assert rows == 0

    def test_conditional_update_rejects_other_columns(self):
        session = self.repository.insert_session("u1", {}, T0)

        with pytest.raises(ValueError, match="Cannot update"):
            self.repository.update_session_if_status(
                session.id, "u1", SessionStatus.ACTIVE, {"user_id": "u2"}, at=T0
            )

    def test_list_sessions_filters_and_pages(self):
        for i in range(5):
            mode = "coding" if i % 2 == 0 else "phone"
            self.repository.insert_session("u1", {"mode": mode}, T0 + timedelta(minutes=i))
        self.repository.insert_session("u2", {"mode": "coding"}, T0)

        sessions, total = self.repository.list_sessions(
            "u1", SessionQuery(mode="coding"), offset=0, limit=2
        )

        assert total == 3
        assert len(sessions) == 2
        assert sessions[0].started_at > sessions[1].started_at

    def test_list_session_usage(self):
        session = self.repository.insert_session("u1", {}, T0)
        self.repository.update_session_if_status(
            session.id, "u1", SessionStatus.ACTIVE,
            {"status": SessionStatus.STOPPED, "duration_seconds": 90, "consumed_minutes": 2},
            at=T0,
        )

        assert self.repository.list_session_usage("u1", SessionQuery()) == [(90, 2)]


class TestEvents(RepositoryTestCase):
    """Test event stream reads."""

    def test_fetch_after_position_breaks_ties_by_id(self):
        session = self.repository.insert_session("u1", {}, T0)
        events = [
            self.repository.insert_event(session.id, "u1", EventType.TRANSCRIPT, {"n": i}, T0)
            for i in range(4)
        ]
        ordered = sorted(events, key=lambda e: e.id)

        rows = self.repository.fetch_events(session.id, after=(T0, ordered[1].id))

        assert [r.id for r in rows] == [e.id for e in ordered[2:]]

    def test_fetch_by_type_newest_first(self):
        session = self.repository.insert_session("u1", {}, T0)
        self.repository.insert_event(session.id, "u1", EventType.TRANSCRIPT, {"n": 1}, T0)
        self.repository.insert_event(session.id, "u1", EventType.SYSTEM, {"n": 2}, T0 + timedelta(seconds=1))
        self.repository.insert_event(session.id, "u1", EventType.TRANSCRIPT, {"n": 3}, T0 + timedelta(seconds=2))

        rows = self.repository.fetch_events(
            session.id, event_type=EventType.TRANSCRIPT, newest_first=True, limit=1
        )

        assert [r.payload["n"] for r in rows] == [3]

    def test_summary_upsert_replaces(self):
        session = self.repository.insert_session("u1", {}, T0)
        self.repository.upsert_summary(session.id, "u1", "final", "first", {}, T0)

        summary = self.repository.upsert_summary(
            session.id, "u1", "final", "second", {"k": 1}, T0 + timedelta(minutes=1)
        )

        assert summary.content == "second"
        assert summary.payload == {"k": 1}
        assert summary.created_at == T0

    def test_list_summaries_filters_and_orders(self):
        first = self.repository.insert_session("u1", {}, T0)
        second = self.repository.insert_session("u1", {}, T0)
        other = self.repository.insert_session("u2", {}, T0)
        self.repository.upsert_summary(first.id, "u1", "final", "a", {}, T0)
        self.repository.upsert_summary(second.id, "u1", "notes", "b", {}, T0 + timedelta(minutes=1))
        self.repository.upsert_summary(first.id, "u1", "notes", "c", {}, T0 + timedelta(minutes=2))
        self.repository.upsert_summary(other.id, "u2", "final", "d", {}, T0)

        oldest_first = self.repository.list_summaries("u1")
        newest_notes = self.repository.list_summaries("u1", summary_types=("notes",), newest_first=True, limit=1)
        for_first = self.repository.list_summaries("u1", session_id=first.id)

        assert [s.content for s in oldest_first] == ["a", "b", "c"]
        assert [s.content for s in newest_notes] == ["c"]
        assert {s.summary_type for s in for_first} == {"final", "notes"}

    def test_list_user_rows_for_export(self):
        mine = self.repository.insert_session("u1", {}, T0)
        theirs = self.repository.insert_session("u2", {}, T0)
        self.repository.insert_event(mine.id, "u1", EventType.SYSTEM, {"n": 2}, T0 + timedelta(seconds=1))
        self.repository.insert_event(mine.id, "u1", EventType.SYSTEM, {"n": 1}, T0)
        self.repository.insert_event(theirs.id, "u2", EventType.SYSTEM, {"n": 3}, T0)

        assert [s.id for s in self.repository.list_user_sessions("u1")] == [mine.id]
        assert [e.payload["n"] for e in self.repository.list_user_events("u1")] == [1, 2]


class TestBulkDelete(RepositoryTestCase):
    """Test scoped bulk deletion."""

    def test_unscoped_delete_refused(self):
        with pytest.raises(UnscopedDeleteError):
            self.repository.bulk_delete("events", DeleteFilter())

    def test_unknown_entity_refused(self):
        with pytest.raises(ValueError):
            self.repository.bulk_delete("users", DeleteFilter(user_id="u1"))

    def test_status_filter_only_for_sessions(self):
        with pytest.raises(ValueError):
            self.repository.bulk_delete(
                "events", DeleteFilter(statuses=(SessionStatus.STOPPED,))
            )

    def test_parent_status_filter_not_for_sessions(self):
        with pytest.raises(ValueError):
            self.repository.bulk_delete(
                "sessions", DeleteFilter(session_statuses=(SessionStatus.STOPPED,))
            )

    def test_parent_status_filter_spares_active_sessions(self):
        live = self.repository.insert_session("u1", {}, T0)
        done = self.repository.insert_session("u1", {}, T0)
        self.repository.update_session_if_status(
            done.id, "u1", SessionStatus.ACTIVE, {"status": SessionStatus.STOPPED}, at=T0
        )
        self.repository.insert_event(live.id, "u1", EventType.SYSTEM, {}, T0)
        self.repository.insert_event(done.id, "u1", EventType.SYSTEM, {}, T0)

        result = self.repository.bulk_delete(
            "events",
            DeleteFilter(user_id="u1", session_statuses=(SessionStatus.STOPPED, SessionStatus.EXPIRED)),
        )

        assert result.count == 1
        assert [e.session_id for e in self.repository.fetch_events(live.id)] == [live.id]
        assert self.repository.fetch_events(done.id) == []

    def test_delete_by_owner_leaves_other_users(self):
        mine = self.repository.insert_session("u1", {}, T0)
        theirs = self.repository.insert_session("u2", {}, T0)
        self.repository.insert_event(mine.id, "u1", EventType.SYSTEM, {}, T0)
        self.repository.insert_event(theirs.id, "u2", EventType.SYSTEM, {}, T0)

        result = self.repository.bulk_delete("events", DeleteFilter(user_id="u1"))

        assert result.count == 1
        assert result.error is None
        assert self.repository.count_rows("events", DeleteFilter(user_id="u2")) == 1

    def test_session_delete_cascades_to_events(self):
        session = self.repository.insert_session("u1", {}, T0)
        self.repository.insert_event(session.id, "u1", EventType.SYSTEM, {}, T0)

        self.repository.bulk_delete("sessions", DeleteFilter(user_id="u1"))

        assert self.repository.count_rows("events", DeleteFilter(user_id="u1")) == 0

    def test_single_delete_only_matches_terminal_owned_session(self):
        session = self.repository.insert_session("u1", {}, T0)
        self.repository.insert_event(session.id, "u1", EventType.SYSTEM, {}, T0)
        self.repository.upsert_summary(session.id, "u1", "final", "done", {}, T0)

        assert self.repository.delete_session_if_terminal(session.id, "u1") == 0
        self.repository.update_session_if_status(
            session.id, "u1", SessionStatus.ACTIVE, {"status": SessionStatus.STOPPED}, at=T0
        )
        assert self.repository.delete_session_if_terminal(session.id, "u2") == 0
        assert self.repository.delete_session_if_terminal(session.id, "u1") == 1

        assert self.repository.get_session(session.id) is None
        assert self.repository.fetch_events(session.id) == []
        assert self.repository.list_summaries("u1") == []


class TestRateLimiter:
    """Test fixed-window rate limiting."""

    def test_limit_then_reject_then_roll_over(self):
        now = [0]
        limiter = FixedWindowRateLimiter(clock=lambda: now[0])

        assert limiter.check("k", 2, 1000).ok
        assert limiter.check("k", 2, 1000).ok
        rejected = limiter.check("k", 2, 1000)
        assert rejected.ok is False
        assert rejected.retry_after_ms == 1000

        now[0] = 1000
        assert limiter.check("k", 2, 1000).ok

    def test_keys_are_independent(self):
        limiter = FixedWindowRateLimiter(clock=lambda: 0)
        limiter.check("a", 1, 1000)

        assert limiter.check("b", 1, 1000).ok
        assert limiter.check("a", 1, 1000).ok is False

    def test_expired_buckets_are_pruned(self):
        now = [0]
        limiter = FixedWindowRateLimiter(clock=lambda: now[0], prune_interval_ms=1000)
        for i in range(50):
            limiter.check(f"client-{i}", 5, 1000)
        assert limiter.bucket_count() == 50

        now[0] = 1000
        limiter.check("late", 5, 1000)

        assert limiter.bucket_count() == 1

    def test_live_buckets_survive_pruning(self):
        now = [0]
        limiter = FixedWindowRateLimiter(clock=lambda: now[0], prune_interval_ms=100)
        limiter.check("long", 1, 10_000)
        limiter.check("short", 1, 100)

        now[0] = 500
        limiter.check("other", 1, 10_000)

        assert limiter.bucket_count() == 2
        assert limiter.check("long", 1, 10_000).ok is False
