"""
Session lifecycle and heartbeat liveness.

States: active (initial), stopped (terminal), expired (terminal).
Transitions:
- active -> stopped: explicit stop request
- active -> expired: a touch finds the heartbeat stale

Liveness is evaluated lazily. Nothing expires a session in the background;
staleness is discovered the next time a heartbeat, stop or read touches it.

Every write is a conditional update scoped by (id, owner, expected status).
When two requests race on a session, the loser's write affects no rows; that
is reported as "already closed" after re-reading the row, never as an error.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional

from .clock import as_utc, parse_iso, to_iso
from .consent import expire as expire_consent
from .consent import revoke as revoke_consent
from .quota import FinalUsage, QuotaMeter
from copilot_guard.storage.models import CopilotSession, SessionStatus

logger = logging.getLogger(__name__)

HEARTBEAT_TIMEOUT_MS = 60_000

_ALLOWED_TRANSITIONS = {
    SessionStatus.ACTIVE: {SessionStatus.STOPPED, SessionStatus.EXPIRED},
    SessionStatus.STOPPED: set(),
    SessionStatus.EXPIRED: set(),
}


@dataclass(frozen=True)
class HeartbeatState:
    """Heartbeat sub-state of a session's metadata."""
    last_heartbeat_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_metadata(cls, metadata: Optional[Mapping[str, Any]]) -> "HeartbeatState":
        if not isinstance(metadata, Mapping):
            return cls()
        return cls(
            last_heartbeat_at=parse_iso(metadata.get("last_heartbeat_at")),
            created_at=parse_iso(metadata.get("created_at")),
        )


@dataclass(frozen=True)
class TransitionOutcome:
    """Result of a lifecycle operation.

    state is one of: "refreshed", "stopped", "expired", "already_closed".
    """
    state: str
    session: CopilotSession
    usage: Optional[FinalUsage] = None

    @property
    def applied(self) -> bool:
        return self.state != "already_closed"


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS[current]


def get_last_heartbeat(session: CopilotSession) -> datetime:
    """Resolve a session's last sign of life.

    Falls back from the heartbeat field to the metadata creation time to the
    session start.
    """
    heartbeat = HeartbeatState.from_metadata(session.metadata)
    return heartbeat.last_heartbeat_at or heartbeat.created_at or as_utc(session.started_at)


def evaluate_liveness(
    session: CopilotSession,
    now: datetime,
    timeout_ms: int = HEARTBEAT_TIMEOUT_MS,
) -> bool:
    """Return True if an active session's heartbeat is stale.

    A terminal session is never stale, however much time has passed.

    The boundary is inclusive on purpose: a heartbeat exactly `timeout_ms`
    old counts as stale. With the default 60s timeout, a stop arriving 60s
    after the last heartbeat observes an expired session, never an active
    one. Do not relax this to a strict comparison.
    """
    if session.status is not SessionStatus.ACTIVE:
        return False
    elapsed = as_utc(now) - get_last_heartbeat(session)
    return elapsed >= timedelta(milliseconds=timeout_ms)


def refresh_heartbeat(metadata: Optional[Mapping[str, Any]], now: datetime) -> Dict[str, Any]:
    """Metadata patch setting the heartbeat, preserving every other key."""
    base = dict(metadata) if isinstance(metadata, Mapping) else {}
    return {**base, "last_heartbeat_at": to_iso(now)}


class SessionLifecycleManager:
    """Drives session transitions against the session store.

    The manager, not the quota meter, guarantees that usage is recorded once
    per session: it records only after winning the terminal write.
    """

    def __init__(self, repository, quota_meter: QuotaMeter, timeout_ms: int = HEARTBEAT_TIMEOUT_MS):
        self.repository = repository
        self.quota_meter = quota_meter
        self.timeout_ms = timeout_ms

    def is_stale(self, session: CopilotSession, now: datetime) -> bool:
        return evaluate_liveness(session, now, self.timeout_ms)

    def touch(self, session: CopilotSession, now: datetime) -> CopilotSession:
        """Lazily expire a stale session on read; return the current row."""
        if self.is_stale(session, now):
            return self.expire(session, now).session
        return session

    def heartbeat(self, session: CopilotSession, now: datetime) -> TransitionOutcome:
        """Refresh the heartbeat of an active session.

        A session found stale is expired instead; a heartbeat cannot revive it.
        """
        if session.status.is_terminal:
            return TransitionOutcome("already_closed", session)
        if self.is_stale(session, now):
            return self.expire(session, now)

        rows = self.repository.update_session_if_status(
            session.id,
            session.user_id,
            SessionStatus.ACTIVE,
            {"metadata": refresh_heartbeat(session.metadata, now)},
            at=now,
        )
        if rows == 0:
            return self._lost_race(session, "heartbeat")
        return TransitionOutcome("refreshed", self._reread(session))

    def stop(self, session: CopilotSession, now: datetime) -> TransitionOutcome:
        """Stop an active session, billing its elapsed time and revoking consent."""
        if session.status.is_terminal:
            return TransitionOutcome("already_closed", session)
        return self._finalize(
            session,
            SessionStatus.STOPPED,
            now,
            ended_at=now,
            metadata=revoke_consent(session.metadata, now),
        )

    def expire(self, session: CopilotSession, now: datetime) -> TransitionOutcome:
        """Expire an active session whose heartbeat went stale.

        Usage is billed up to the last heartbeat, not up to the moment the
        staleness was noticed.
        """
        if session.status.is_terminal:
            return TransitionOutcome("already_closed", session)
        ended_at = min(max(get_last_heartbeat(session), as_utc(session.started_at)), as_utc(now))
        metadata = expire_consent(session.metadata, now)
        metadata["expired_reason"] = "heartbeat_timeout"
        return self._finalize(session, SessionStatus.EXPIRED, now, ended_at, metadata)

    def _finalize(
        self,
        session: CopilotSession,
        target: SessionStatus,
        now: datetime,
        ended_at: datetime,
        metadata: Dict[str, Any],
    ) -> TransitionOutcome:
        if not can_transition(session.status, target):
            raise ValueError(f"Invalid transition {session.status.value} -> {target.value}")

        usage = self.quota_meter.settle(session.user_id, session.id, session.started_at, ended_at)
        metadata["requested_minutes"] = usage.requested_minutes

        rows = self.repository.update_session_if_status(
            session.id,
            session.user_id,
            SessionStatus.ACTIVE,
            {
                "status": target,
                "stopped_at": now,
                "duration_seconds": usage.elapsed_seconds,
                "consumed_minutes": usage.billed_minutes,
                "metadata": metadata,
            },
            at=now,
        )
        if rows == 0:
            return self._lost_race(session, target.value)

        self.quota_meter.record_usage(
            session.user_id, usage.billed_minutes, session_id=session.id, at=now
        )
        logger.info(
            "Copilot session %s %s: elapsed=%ds requested=%dm billed=%dm",
            session.id,
            target.value,
            usage.elapsed_seconds,
            usage.requested_minutes,
            usage.billed_minutes,
        )
        return TransitionOutcome(target.value, self._reread(session), usage)

    def _lost_race(self, session: CopilotSession, attempted: str) -> TransitionOutcome:
        current = self._reread(session)
        logger.info(
            "Conditional %s on copilot session %s lost the race; current status %s",
            attempted,
            session.id,
            current.status.value,
        )
        return TransitionOutcome("already_closed", current)

    def _reread(self, session: CopilotSession) -> CopilotSession:
        # A purge may have removed the row in between; keep the last known copy.
        return self.repository.get_session(session.id) or session
