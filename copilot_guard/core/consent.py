"""
Consent gate for session data ingestion.

Consent is stored as flat fields on the session metadata:
    consent_status: 'pending' | 'granted' | 'revoked' | 'expired'
    consent_granted_at: ISO timestamp
    consent_revoked_at: ISO timestamp (set on revoke)

Sessions created before consent tracking carry none of these fields and are
read as 'pending'.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .clock import as_utc, parse_iso, to_iso
from copilot_guard.storage.models import CopilotSession, SessionStatus


class ConsentStatus(str, Enum):
    PENDING = "pending"
    GRANTED = "granted"
    REVOKED = "revoked"
    EXPIRED = "expired"


@dataclass(frozen=True)
class ConsentState:
    """Consent sub-state of a session's metadata."""
    status: ConsentStatus = ConsentStatus.PENDING
    granted_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    @classmethod
    def from_metadata(cls, metadata: Optional[Mapping[str, Any]]) -> "ConsentState":
        """Read consent from metadata, falling back to safe defaults.

        Never raises: unknown status values read as pending and unparsable
        timestamps read as absent.
        """
        if not isinstance(metadata, Mapping):
            return cls()
        raw = metadata.get("consent_status")
        try:
            status = ConsentStatus(raw)
        except ValueError:
            status = ConsentStatus.PENDING
        return cls(
            status=status,
            granted_at=parse_iso(metadata.get("consent_granted_at")),
            revoked_at=parse_iso(metadata.get("consent_revoked_at")),
        )


@dataclass(frozen=True)
class ConsentDecision:
    """Result of an ingest consent check."""
    allowed: bool
    reason: Optional[str] = None


_DENIAL_REASONS = {
    ConsentStatus.PENDING: "consent_pending",
    ConsentStatus.REVOKED: "consent_revoked",
    ConsentStatus.EXPIRED: "consent_expired",
}


def get_consent_state(session: CopilotSession) -> ConsentState:
    return ConsentState.from_metadata(session.metadata)


def check_ingest_consent(
    session: CopilotSession,
    action_at: Optional[datetime] = None,
) -> ConsentDecision:
    """Check whether a session may ingest new events.

    Order of checks:
    1. Session status - a non-active session never ingests, whatever its consent
    2. Consent status - granted consent allows ingestion
    3. Action time - under a revoked consent, an event captured at
       `action_at` before the revocation is still allowed
    """
    if session.status is not SessionStatus.ACTIVE:
        return ConsentDecision(allowed=False, reason="session_not_active")

    consent = get_consent_state(session)
    if consent.status is ConsentStatus.GRANTED:
        return ConsentDecision(allowed=True)
    if (
        consent.status is ConsentStatus.REVOKED
        and action_at is not None
        and is_consent_valid_at(session, action_at)
    ):
        return ConsentDecision(allowed=True)
    return ConsentDecision(allowed=False, reason=_DENIAL_REASONS[consent.status])


def grant(metadata: Optional[Mapping[str, Any]], at: datetime) -> Dict[str, Any]:
    """Metadata patch recording a consent grant."""
    return {
        **_copy(metadata),
        "consent_status": ConsentStatus.GRANTED.value,
        "consent_granted_at": to_iso(at),
    }


def revoke(metadata: Optional[Mapping[str, Any]], at: datetime) -> Dict[str, Any]:
    """Metadata patch recording a consent revocation.

    After this, no action timestamped at or after `at` is consented.
    """
    return {
        **_copy(metadata),
        "consent_status": ConsentStatus.REVOKED.value,
        "consent_revoked_at": to_iso(at),
    }


def expire(metadata: Optional[Mapping[str, Any]], at: datetime) -> Dict[str, Any]:
    """Metadata patch marking consent as lapsed with its session."""
    return {
        **_copy(metadata),
        "consent_status": ConsentStatus.EXPIRED.value,
        "consent_revoked_at": to_iso(at),
    }


def is_consent_valid_at(session: CopilotSession, action_at: datetime) -> bool:
    """Check whether consent covered an action at a specific instant.

    Closes the revoke race: an event timestamped before the revocation is
    covered even if it arrives after it, one timestamped at or after it is
    not. The revocation timestamp wins over the stored status.

    A revoked consent still covers actions in [granted_at, revoked_at).
    """
    consent = get_consent_state(session)
    action_at = as_utc(action_at)

    if consent.revoked_at is not None and action_at >= consent.revoked_at:
        return False

    if consent.status is ConsentStatus.GRANTED:
        return True
    if consent.status is ConsentStatus.REVOKED:
        return (
            consent.granted_at is not None
            and consent.revoked_at is not None
            and consent.granted_at <= action_at
        )
    return False


def _copy(metadata: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    return dict(metadata) if isinstance(metadata, Mapping) else {}
