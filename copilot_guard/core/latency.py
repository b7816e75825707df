"""
Per-request stage timing for the copilot pipeline.

Tracks ingest, transcript parse, context retrieval, inference, persistence and
delivery stages. Only completed stages count toward totals and snapshots.
Instrumentation is best effort: calls for unknown requests or stages are
ignored rather than raised.
"""

import json
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

STAGES = (
    "ingest",
    "transcript_parse",
    "context_retrieval",
    "llm_inference",
    "suggestion_persist",
    "delivery",
)


def _epoch_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class StageTiming:
    stage: str
    started_at: int
    ended_at: Optional[int] = None

    @property
    def duration_ms(self) -> Optional[int]:
        if self.ended_at is None:
            return None
        return self.ended_at - self.started_at


@dataclass(frozen=True)
class LatencyTimings:
    """Snapshot of a request's completed stages."""
    request_id: str
    session_id: str
    stages: List[StageTiming]
    total_latency_ms: int


@dataclass
class _Timeline:
    request_id: str
    session_id: str
    stages: List[StageTiming] = field(default_factory=list)


class LatencyTracker:
    """Registry of in-flight request timelines keyed by request id.

    Entries live until `clear` is called. `track` wraps a request and clears
    its entry on exit, including on error.
    """

    def __init__(self, clock: Callable[[], int] = _epoch_ms):
        self._clock = clock
        self._active: Dict[str, _Timeline] = {}
        self._lock = threading.Lock()

    def start(self, request_id: str, session_id: str) -> None:
        with self._lock:
            self._active[request_id] = _Timeline(request_id, session_id)

    def start_stage(self, request_id: str, stage: str) -> None:
        with self._lock:
            timeline = self._active.get(request_id)
            if timeline is None:
                logger.warning("No active latency timing for request %s", request_id)
                return
            timeline.stages.append(StageTiming(stage=stage, started_at=self._clock()))

    def end_stage(self, request_id: str, stage: str) -> Optional[StageTiming]:
        """Close the first unclosed entry of `stage`. Returns None if there is none."""
        with self._lock:
            timeline = self._active.get(request_id)
            if timeline is None:
                return None
            for entry in timeline.stages:
                if entry.stage == stage and entry.ended_at is None:
                    entry.ended_at = self._clock()
                    return entry
            return None

    def end_stage_by_index(self, request_id: str, index: int) -> Optional[StageTiming]:
        with self._lock:
            timeline = self._active.get(request_id)
            if timeline is None or index < 0 or index >= len(timeline.stages):
                return None
            entry = timeline.stages[index]
            if entry.ended_at is not None:
                return None
            entry.ended_at = self._clock()
            return entry

    def get_timings(self, request_id: str) -> Optional[LatencyTimings]:
        """Snapshot completed stages; unclosed ones are left out."""
        with self._lock:
            timeline = self._active.get(request_id)
            if timeline is None:
                return None
            completed = [
                StageTiming(s.stage, s.started_at, s.ended_at)
                for s in timeline.stages
                if s.ended_at is not None
            ]
        return LatencyTimings(
            request_id=timeline.request_id,
            session_id=timeline.session_id,
            stages=completed,
            total_latency_ms=sum(s.duration_ms for s in completed),
        )

    def clear(self, request_id: str) -> None:
        with self._lock:
            self._active.pop(request_id, None)

    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    @contextmanager
    def track(self, request_id: str, session_id: str) -> Iterator["LatencyTracker"]:
        self.start(request_id, session_id)
        try:
            yield self
        finally:
            self.clear(request_id)

    @contextmanager
    def stage(self, request_id: str, stage: str) -> Iterator[None]:
        """Time a block as one stage. A block that raises leaves the stage unclosed."""
        self.start_stage(request_id, stage)
        yield
        self.end_stage(request_id, stage)


def timings_to_metadata(timings: LatencyTimings) -> Dict[str, Any]:
    stage_durations = {s.stage: s.duration_ms for s in timings.stages}
    return {
        "latency": {
            "request_id": timings.request_id,
            "session_id": timings.session_id,
            "stages": stage_durations,
            "total_ms": timings.total_latency_ms,
        }
    }


def log_latency_metrics(timings: LatencyTimings, extra: Optional[Dict[str, Any]] = None) -> None:
    """Emit one structured log line for log-based dashboards."""
    metric: Dict[str, Any] = {
        "type": "copilot_latency",
        "request_id": timings.request_id,
        "session_id": timings.session_id,
        "total_ms": timings.total_latency_ms,
    }
    if extra:
        metric.update(extra)
    for stage in timings.stages:
        metric[f"{stage.stage}_ms"] = stage.duration_ms
    logger.info("[latency] %s", json.dumps(metric, sort_keys=True))
