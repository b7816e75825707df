"""
Multi-window usage metering.

Copilot minutes are limited by three independent windows: monthly, daily and
per-session. They are separate ceilings, not a shared budget, so every window
has to allow an action for it to proceed, and the tightest remaining value
caps what gets billed.

Billing rules:
1. Elapsed seconds are floored, elapsed minutes rounded UP to the next whole minute
2. Billed minutes = min(requested, remaining of each window), never negative
3. Usage is recorded once per session, at its terminal transition
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from .clock import as_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaWindow:
    """Usage against one ceiling."""
    used: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def allowed(self) -> bool:
        return self.used < self.limit

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
        }


@dataclass(frozen=True)
class QuotaSnapshot:
    """The three independent windows of one user at one point in time."""
    monthly: QuotaWindow
    daily: QuotaWindow
    per_session: QuotaWindow

    def to_dict(self) -> Dict[str, Any]:
        return {
            "copilot_minutes": self.monthly.to_dict(),
            "copilot_daily_minutes": self.daily.to_dict(),
            "copilot_session_minutes": self.per_session.to_dict(),
        }


@dataclass(frozen=True)
class ElapsedUsage:
    """Wall-clock usage of a session."""
    elapsed_seconds: int
    elapsed_minutes: int


@dataclass(frozen=True)
class FinalUsage:
    """Usage settled at a session's terminal transition."""
    elapsed_seconds: int
    requested_minutes: int
    billed_minutes: int
    remaining_after: Dict[str, int]

    @property
    def quota_limited(self) -> bool:
        return self.billed_minutes < self.requested_minutes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "elapsed_seconds": self.elapsed_seconds,
            "requested_minutes": self.requested_minutes,
            "billed_minutes": self.billed_minutes,
            "quota_limited": self.quota_limited,
            "remaining_after": dict(self.remaining_after),
        }


def can_admit(snapshot: QuotaSnapshot) -> bool:
    """A session may start only if all three windows allow it."""
    return (
        snapshot.monthly.allowed
        and snapshot.daily.allowed
        and snapshot.per_session.allowed
    )


def get_elapsed_usage(started_at: datetime, now: datetime) -> ElapsedUsage:
    """Compute elapsed usage between two instants.

    A clock that runs backwards yields zero rather than negative usage.

    Args:
        started_at: Session start
        now: End of the measured interval

    Returns:
        ElapsedUsage with seconds floored and minutes rounded up
    """
    elapsed_ms = max(0.0, (as_utc(now) - as_utc(started_at)).total_seconds() * 1000)
    elapsed_seconds = int(elapsed_ms // 1000)
    elapsed_minutes = math.ceil(elapsed_seconds / 60)
    return ElapsedUsage(elapsed_seconds=elapsed_seconds, elapsed_minutes=elapsed_minutes)


def get_billable_minutes(requested_minutes: int, snapshot: QuotaSnapshot) -> int:
    """Cap requested minutes by the tightest remaining window."""
    return max(
        0,
        min(
            requested_minutes,
            snapshot.monthly.remaining,
            snapshot.daily.remaining,
            snapshot.per_session.remaining,
        ),
    )


def compute_final_usage(
    started_at: datetime,
    ended_at: datetime,
    snapshot: QuotaSnapshot,
) -> FinalUsage:
    """Settle a session's usage for its terminal transition."""
    elapsed = get_elapsed_usage(started_at, ended_at)
    billed = get_billable_minutes(elapsed.elapsed_minutes, snapshot)
    return FinalUsage(
        elapsed_seconds=elapsed.elapsed_seconds,
        requested_minutes=elapsed.elapsed_minutes,
        billed_minutes=billed,
        remaining_after={
            "monthly": max(0, snapshot.monthly.remaining - billed),
            "daily": max(0, snapshot.daily.remaining - billed),
            "per_session": max(0, snapshot.per_session.remaining - billed),
        },
    )


class QuotaMeter:
    """Usage accounting over a quota collaborator.

    The collaborator provides `get_quota_snapshot(user_id, session_id, at)`
    and `record_usage(user_id, minutes, session_id, at)`.
    """

    def __init__(self, store):
        self.store = store

    def get_snapshot(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> QuotaSnapshot:
        return self.store.get_quota_snapshot(user_id, session_id=session_id, at=at)

    def check_admission(self, user_id: str, at: Optional[datetime] = None) -> QuotaSnapshot:
        """Read the windows that gate a session start.

        Callers decide with `can_admit(snapshot)`; the snapshot is returned so
        a rejection can carry the remaining-quota detail.
        """
        snapshot = self.get_snapshot(user_id, at=at)
        if not can_admit(snapshot):
            logger.info(
                "Copilot admission denied for user %s: monthly=%d/%d daily=%d/%d session=%d/%d",
                user_id,
                snapshot.monthly.used, snapshot.monthly.limit,
                snapshot.daily.used, snapshot.daily.limit,
                snapshot.per_session.used, snapshot.per_session.limit,
            )
        return snapshot

    def settle(
        self,
        user_id: str,
        session_id: str,
        started_at: datetime,
        ended_at: datetime,
    ) -> FinalUsage:
        """Compute the billable usage of a session ending at `ended_at`."""
        snapshot = self.get_snapshot(user_id, session_id=session_id, at=ended_at)
        return compute_final_usage(started_at, ended_at, snapshot)

    def record_usage(
        self,
        user_id: str,
        minutes: int,
        session_id: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> None:
        """Record billed minutes. Zero or negative amounts are ignored."""
        if minutes <= 0:
            return
        self.store.record_usage(user_id, minutes, session_id=session_id, at=at)
