"""
Data models for storage layer.

Defines the copilot session, event and summary records.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class SessionStatus(str, Enum):
    """Lifecycle status of a copilot session.

    ACTIVE is the only non-terminal state. STOPPED and EXPIRED are sinks.
    """
    ACTIVE = "active"
    STOPPED = "stopped"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.ACTIVE


TERMINAL_STATUSES = (SessionStatus.STOPPED, SessionStatus.EXPIRED)


class EventType(str, Enum):
    """Kinds of rows in a session's event stream."""
    TRANSCRIPT = "transcript"
    SUGGESTION = "suggestion"
    SYSTEM = "system"


@dataclass(frozen=True)
class CopilotSession:
    """A live interview copilot session as stored.

    `metadata` is the free-form map that also carries the heartbeat and
    consent sub-state (see core.session.HeartbeatState and
    core.consent.ConsentState).
    """
    id: str
    user_id: str
    status: SessionStatus
    started_at: datetime
    stopped_at: Optional[datetime] = None
    duration_seconds: int = 0
    consumed_minutes: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    title: Optional[str] = None
    interview_session_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for response payloads."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "interview_session_id": self.interview_session_id,
            "title": self.title,
            "metadata": dict(self.metadata),
            "status": self.status.value,
            "started_at": _iso_or_none(self.started_at),
            "stopped_at": _iso_or_none(self.stopped_at),
            "duration_seconds": self.duration_seconds,
            "consumed_minutes": self.consumed_minutes,
            "created_at": _iso_or_none(self.created_at),
            "updated_at": _iso_or_none(self.updated_at),
        }


@dataclass(frozen=True)
class CopilotEvent:
    """Append-only row of a session's event stream.

    Ordered by the (created_at, id) tuple; id breaks ties between rows that
    share a timestamp.
    """
    id: str
    session_id: str
    user_id: str
    event_type: EventType
    payload: Dict[str, Any]
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "event_type": self.event_type.value,
            "payload": dict(self.payload),
            "created_at": _iso_or_none(self.created_at),
        }


@dataclass(frozen=True)
class CopilotSummary:
    """Post-session summary, one per (session, summary_type)."""
    id: str
    session_id: str
    user_id: str
    summary_type: str
    content: Optional[str]
    payload: Dict[str, Any]
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "summary_type": self.summary_type,
            "content": self.content,
            "payload": dict(self.payload),
            "created_at": _iso_or_none(self.created_at),
            "updated_at": _iso_or_none(self.updated_at),
        }


def _iso_or_none(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
