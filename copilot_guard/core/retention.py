"""
Policy-driven retention sweep.

Deletes copilot data older than its retention window. The sweep is a dry run
unless the caller explicitly asks for live mode.

Sweep Order (live mode):
1. Events older than the events cutoff
2. Summaries older than the summaries cutoff
3. Sessions older than the sessions cutoff, restricted to stopped/expired

Active sessions are never deleted by age alone. The first failed deletion
aborts the sweep with RetentionSweepError.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional

from .clock import to_iso, utc_now
from .errors import RetentionSweepError
from copilot_guard.storage.models import TERMINAL_STATUSES
from copilot_guard.storage.repository import DeleteFilter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionPolicy:
    """Maximum age in days, per entity class, before data is eligible for deletion."""
    events_days: int = 30
    summaries_days: int = 90
    sessions_days: int = 90

    def __post_init__(self):
        """Validate every window is a positive whole number of days."""
        for name in ("events_days", "summaries_days", "sessions_days"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer")


DEFAULT_RETENTION_POLICY = RetentionPolicy()


@dataclass(frozen=True)
class RetentionCutoffs:
    events_before: datetime
    summaries_before: datetime
    sessions_before: datetime


@dataclass(frozen=True)
class RetentionResult:
    dry_run: bool
    policy: RetentionPolicy
    cutoffs: RetentionCutoffs
    deleted: Dict[str, int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "policy": asdict(self.policy),
            "cutoffs": {
                "events_before": to_iso(self.cutoffs.events_before),
                "summaries_before": to_iso(self.cutoffs.summaries_before),
                "sessions_before": to_iso(self.cutoffs.sessions_before),
            },
            "deleted": dict(self.deleted),
        }


def resolve_retention_policy(
    overrides: Optional[Mapping[str, Optional[int]]] = None,
    defaults: RetentionPolicy = DEFAULT_RETENTION_POLICY,
) -> RetentionPolicy:
    """Merge overrides over the defaults. None values keep the default.

    Raises:
        ValueError: If an override key is unknown or a value is not positive
    """
    merged = asdict(defaults)
    for key, value in (overrides or {}).items():
        if key not in merged:
            raise ValueError(f"Unknown retention policy key: {key}")
        if value is not None:
            merged[key] = value
    return RetentionPolicy(**merged)


def compute_cutoffs(now: datetime, policy: RetentionPolicy) -> RetentionCutoffs:
    return RetentionCutoffs(
        events_before=now - timedelta(days=policy.events_days),
        summaries_before=now - timedelta(days=policy.summaries_days),
        sessions_before=now - timedelta(days=policy.sessions_days),
    )


class RetentionSweeper:
    """Runs retention sweeps through a bulk-delete collaborator.

    The collaborator provides `bulk_delete(entity, DeleteFilter)` returning
    an object with `count` and `error`.
    """

    def __init__(self, deleter):
        self.deleter = deleter

    def sweep(
        self,
        now: Optional[datetime] = None,
        policy: Optional[RetentionPolicy] = None,
        dry_run: bool = True,
    ) -> RetentionResult:
        """Run one sweep.

        Args:
            now: Reference instant for the cutoffs
            policy: Retention windows; defaults apply when omitted
            dry_run: When True (the default) nothing is deleted

        Returns:
            RetentionResult with policy, cutoffs and per-entity deleted counts

        Raises:
            RetentionSweepError: If any deletion fails
        """
        now = now or utc_now()
        policy = policy or DEFAULT_RETENTION_POLICY
        cutoffs = compute_cutoffs(now, policy)

        if dry_run:
            logger.info(
                "Retention dry run at %s: events<%s summaries<%s sessions<%s",
                to_iso(now),
                to_iso(cutoffs.events_before),
                to_iso(cutoffs.summaries_before),
                to_iso(cutoffs.sessions_before),
            )
            return RetentionResult(
                dry_run=True,
                policy=policy,
                cutoffs=cutoffs,
                deleted={"events": 0, "summaries": 0, "sessions": 0},
            )

        plan = (
            ("events", DeleteFilter(created_before=cutoffs.events_before)),
            ("summaries", DeleteFilter(created_before=cutoffs.summaries_before)),
            (
                "sessions",
                DeleteFilter(
                    created_before=cutoffs.sessions_before,
                    statuses=TERMINAL_STATUSES,
                ),
            ),
        )

        deleted: Dict[str, int] = {}
        for entity, scope in plan:
            result = self.deleter.bulk_delete(entity, scope)
            if result.error:
                logger.error(
                    "Retention sweep aborted deleting %s after %s: %s",
                    entity,
                    deleted,
                    result.error,
                )
                raise RetentionSweepError(entity, result.error)
            deleted[entity] = result.count or 0

        logger.info(
            "Retention sweep deleted %d events, %d summaries, %d sessions",
            deleted["events"],
            deleted["summaries"],
            deleted["sessions"],
        )
        return RetentionResult(dry_run=False, policy=policy, cutoffs=cutoffs, deleted=deleted)
