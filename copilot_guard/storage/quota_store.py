"""
Usage counter storage.

Backs the three independent copilot quota windows with per-period counters.
Limits come from the plan configuration; used amounts from the counter table.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Optional

from copilot_guard.core.clock import as_utc, to_iso, utc_now
from copilot_guard.core.quota import QuotaSnapshot, QuotaWindow
from .db import DEFAULT_DB_PATH, get_connection

logger = logging.getLogger(__name__)

MONTHLY_COUNTER = "copilot_minutes"
DAILY_COUNTER = "copilot_daily_minutes"
SESSION_COUNTER = "copilot_session_minutes"

# Period key used for the per-session window before a session exists.
NEW_SESSION_PERIOD = "new"


def period_key(counter_type: str, at: datetime, session_id: Optional[str] = None) -> str:
    """Return the counter period a usage at `at` belongs to.

    Monthly and daily windows roll over on UTC calendar boundaries; the
    per-session window is keyed by the session itself.
    """
    at = as_utc(at)
    if counter_type == MONTHLY_COUNTER:
        return at.strftime("%Y-%m")
    if counter_type == DAILY_COUNTER:
        return at.strftime("%Y-%m-%d")
    if counter_type == SESSION_COUNTER:
        return session_id or NEW_SESSION_PERIOD
    raise ValueError(f"Unknown counter type: {counter_type}")


class QuotaRepository:
    """Quota collaborator backed by SQLite usage counters."""

    def __init__(
        self,
        monthly_limit: int,
        daily_limit: int,
        session_limit: int,
        db_path: str = DEFAULT_DB_PATH,
    ):
        """Initialize the store.

        Args:
            monthly_limit: Minutes allowed per calendar month
            daily_limit: Minutes allowed per calendar day
            session_limit: Minutes allowed in a single session
            db_path: Path to SQLite database file
        """
        self.limits = {
            MONTHLY_COUNTER: monthly_limit,
            DAILY_COUNTER: daily_limit,
            SESSION_COUNTER: session_limit,
        }
        self.db_path = db_path

    def get_window(
        self,
        user_id: str,
        counter_type: str,
        at: datetime,
        session_id: Optional[str] = None,
    ) -> QuotaWindow:
        """Read one quota window for a user."""
        key = period_key(counter_type, at, session_id)
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT used FROM copilot_usage_counters "
                "WHERE user_id = ? AND counter_type = ? AND period_key = ?",
                (user_id, counter_type, key),
            ).fetchone()
        finally:
            conn.close()
        used = row[0] if row else 0
        return QuotaWindow(used=used, limit=self.limits[counter_type])

    def get_quota_snapshot(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> QuotaSnapshot:
        """Read all three windows.

        The reads are independent, so they are issued concurrently and joined.
        """
        at = at or utc_now()
        with ThreadPoolExecutor(max_workers=3) as pool:
            monthly = pool.submit(self.get_window, user_id, MONTHLY_COUNTER, at)
            daily = pool.submit(self.get_window, user_id, DAILY_COUNTER, at)
            per_session = pool.submit(
                self.get_window, user_id, SESSION_COUNTER, at, session_id
            )
            return QuotaSnapshot(
                monthly=monthly.result(),
                daily=daily.result(),
                per_session=per_session.result(),
            )

    def record_usage(
        self,
        user_id: str,
        minutes: int,
        session_id: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> None:
        """Add minutes to all three counters in a single transaction."""
        if minutes <= 0:
            return
        at = at or utc_now()
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN")
            for counter_type in (MONTHLY_COUNTER, DAILY_COUNTER, SESSION_COUNTER):
                conn.execute(
                    """
                    INSERT INTO copilot_usage_counters
                    (user_id, counter_type, period_key, used, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT (user_id, counter_type, period_key) DO UPDATE SET
                        used = used + excluded.used,
                        updated_at = excluded.updated_at
                    """,
                    (
                        user_id,
                        counter_type,
                        period_key(counter_type, at, session_id),
                        minutes,
                        to_iso(at),
                    ),
                )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        logger.info("Recorded %d copilot minutes for user %s", minutes, user_id)
