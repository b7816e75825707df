"""
Tests for session lifecycle and heartbeat liveness.
"""
import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from copilot_guard.core.consent import ConsentStatus, get_consent_state, grant
from copilot_guard.core.quota import QuotaMeter
from copilot_guard.core.session import (
    SessionLifecycleManager,
    can_transition,
    evaluate_liveness,
    get_last_heartbeat,
    refresh_heartbeat,
)
from copilot_guard.storage.models import CopilotSession, SessionStatus
from copilot_guard.storage.quota_store import QuotaRepository
from copilot_guard.storage.repository import CopilotRepository, initialize_schema

T0 = datetime(2024, 5, 1, 9, 0, 0, tzinfo=timezone.utc)


def make_session(metadata=None, status=SessionStatus.ACTIVE):
    return CopilotSession(id="s1", user_id="u1", status=status, started_at=T0, metadata=metadata or {})


class TestLiveness:
    """Test staleness evaluation."""

    def test_fresh_session_not_stale(self):
        assert evaluate_liveness(make_session(), T0 + timedelta(seconds=59), 60_000) is False

    def test_timeout_boundary_is_stale(self):
        """Test the boundary is inclusive: exactly timeout_ms old is stale."""
        assert evaluate_liveness(make_session(), T0 + timedelta(milliseconds=59_999), 60_000) is False
        assert evaluate_liveness(make_session(), T0 + timedelta(seconds=60), 60_000) is True

    def test_heartbeat_resets_the_clock(self):
        session = make_session(refresh_heartbeat({}, T0 + timedelta(seconds=30)))

        assert evaluate_liveness(session, T0 + timedelta(seconds=80), 60_000) is False
        assert evaluate_liveness(session, T0 + timedelta(seconds=90), 60_000) is True

    @pytest.mark.parametrize("status", [SessionStatus.STOPPED, SessionStatus.EXPIRED])
    def test_terminal_session_never_stale(self, status):
        session = make_session(status=status)

        assert evaluate_liveness(session, T0 + timedelta(days=365), 60_000) is False

    def test_last_heartbeat_fallbacks(self):
        created = T0 + timedelta(seconds=5)

        assert get_last_heartbeat(make_session()) == T0
        assert get_last_heartbeat(make_session({"created_at": created.isoformat()})) == created
        assert get_last_heartbeat(make_session({"last_heartbeat_at": "garbage"})) == T0

    def test_refresh_preserves_keys(self):
        patched = refresh_heartbeat({"mode": "video", "consent_status": "granted"}, T0)

        assert patched["mode"] == "video"
        assert patched["consent_status"] == "granted"
        assert "last_heartbeat_at" in patched


class TestTransitions:
    """Test the allowed status graph."""

    def test_active_can_close(self):
        assert can_transition(SessionStatus.ACTIVE, SessionStatus.STOPPED)
        assert can_transition(SessionStatus.ACTIVE, SessionStatus.EXPIRED)

    def test_terminal_states_are_sinks(self):
        for source in (SessionStatus.STOPPED, SessionStatus.EXPIRED):
            for target in SessionStatus:
                assert not can_transition(source, target)


class TestLifecycleManager:
    """Test transitions against a real SQLite store."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = CopilotRepository(self.db_path)
        self.quota_store = QuotaRepository(600, 120, 60, db_path=self.db_path)
        self.manager = SessionLifecycleManager(
            self.repository, QuotaMeter(self.quota_store), timeout_ms=60_000
        )

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _start(self):
        metadata = grant(refresh_heartbeat({}, T0), T0)
        return self.repository.insert_session("u1", metadata, T0)

    def test_heartbeat_refreshes_active_session(self):
        session = self._start()

        outcome = self.manager.heartbeat(session, T0 + timedelta(seconds=30))

        assert outcome.state == "refreshed"
        assert get_last_heartbeat(outcome.session) == T0 + timedelta(seconds=30)

    def test_stop_bills_elapsed_minutes_once(self):
        session = self._start()

        outcome = self.manager.stop(session, T0 + timedelta(seconds=61))

        assert outcome.state == "stopped"
        assert outcome.session.status is SessionStatus.STOPPED
        assert outcome.session.duration_seconds == 61
        assert outcome.session.consumed_minutes == 2
        assert get_consent_state(outcome.session).status is ConsentStatus.REVOKED
        snap = self.quota_store.get_quota_snapshot("u1", session_id=session.id, at=T0)
        assert snap.monthly.used == 2

    def test_second_stop_is_already_closed(self):
        session = self._start()
        self.manager.stop(session, T0 + timedelta(seconds=61))

        # Stale copy still says active; the conditional write must lose.
        outcome = self.manager.stop(session, T0 + timedelta(seconds=70))

        assert outcome.state == "already_closed"
        assert outcome.session.status is SessionStatus.STOPPED
        snap = self.quota_store.get_quota_snapshot("u1", session_id=session.id, at=T0)
        assert snap.monthly.used == 2

    def test_stale_heartbeat_expires_instead(self):
        session = self._start()

        outcome = self.manager.heartbeat(session, T0 + timedelta(seconds=120))

        assert outcome.state == "expired"
        assert outcome.session.status is SessionStatus.EXPIRED
        assert outcome.session.metadata["expired_reason"] == "heartbeat_timeout"
        assert get_consent_state(outcome.session).status is ConsentStatus.EXPIRED

    def test_expiry_bills_up_to_last_heartbeat(self):
        session = self._start()
        self.manager.heartbeat(session, T0 + timedelta(seconds=30))
        session = self.repository.get_session(session.id)

        outcome = self.manager.expire(session, T0 + timedelta(minutes=30))

        assert outcome.session.duration_seconds == 30
        assert outcome.session.consumed_minutes == 1
        assert outcome.session.stopped_at == T0 + timedelta(minutes=30)

    def test_touch_leaves_fresh_session_alone(self):
        session = self._start()

        assert self.manager.touch(session, T0 + timedelta(seconds=10)) is session

    def test_heartbeat_after_stop_cannot_revive(self):
        session = self._start()
        self.manager.stop(session, T0 + timedelta(seconds=20))

        outcome = self.manager.heartbeat(session, T0 + timedelta(seconds=25))

        assert outcome.state == "already_closed"
        assert self.repository.get_session(session.id).status is SessionStatus.STOPPED
