"""
Fixed-window rate limiting.

Requests over the limit are rejected immediately with the time left until the
window rolls over; nothing is queued.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

# How often expired buckets are dropped, in ms
PRUNE_INTERVAL_MS = 60_000


@dataclass(frozen=True)
class RateLimitResult:
    ok: bool
    retry_after_ms: int = 0


@dataclass
class _Bucket:
    count: int
    reset_at: int


class FixedWindowRateLimiter:
    """In-process limiter keyed by an arbitrary string (client address, user id).

    Buckets whose window has rolled over are pruned periodically, so the
    table only holds keys seen within the last window.
    """

    def __init__(
        self,
        clock: Optional[Callable[[], int]] = None,
        prune_interval_ms: int = PRUNE_INTERVAL_MS,
    ):
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._buckets: Dict[str, _Bucket] = {}
        self._lock = threading.Lock()
        self._prune_interval_ms = prune_interval_ms
        self._next_prune_at: Optional[int] = None

    def bucket_count(self) -> int:
        with self._lock:
            return len(self._buckets)

    def check(self, key: str, limit: int, window_ms: int) -> RateLimitResult:
        """Count one request against `key` and report whether it may proceed."""
        now = self._clock()
        with self._lock:
            self._prune_expired(now)
            bucket = self._buckets.get(key)
            if bucket is None or now >= bucket.reset_at:
                self._buckets[key] = _Bucket(count=1, reset_at=now + window_ms)
                return RateLimitResult(ok=True)
            if bucket.count >= limit:
                return RateLimitResult(ok=False, retry_after_ms=bucket.reset_at - now)
            bucket.count += 1
            return RateLimitResult(ok=True)

    def reset(self, key: str) -> None:
        with self._lock:
            self._buckets.pop(key, None)

    def _prune_expired(self, now: int) -> None:
        # Caller holds the lock.
        if self._next_prune_at is not None and now < self._next_prune_at:
            return
        self._next_prune_at = now + self._prune_interval_ms
        expired = [key for key, bucket in self._buckets.items() if now >= bucket.reset_at]
        for key in expired:
            del self._buckets[key]
