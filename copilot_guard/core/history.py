"""
Session history filters and usage aggregation.
"""

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Tuple

from .clock import parse_iso

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 30


@dataclass(frozen=True)
class HistoryFilters:
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    status: Optional[str] = None
    mode: Optional[str] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


@dataclass(frozen=True)
class UsageAggregate:
    total_duration_seconds: int = 0
    total_consumed_minutes: int = 0


def _optional_string(value: Any, max_length: int = 64) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value[:max_length] if value else None


def _positive_int(value: Any, fallback: int) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed >= 1 else fallback


def parse_history_filters(query: Mapping[str, Any]) -> HistoryFilters:
    """Read paging and filter parameters, clamping instead of rejecting."""
    page = _positive_int(query.get("page"), 1)
    page_size = min(MAX_PAGE_SIZE, _positive_int(query.get("pageSize"), DEFAULT_PAGE_SIZE))
    return HistoryFilters(
        page=page,
        page_size=page_size,
        status=_optional_string(query.get("status"), 24),
        mode=_optional_string(query.get("mode"), 24),
        date_from=_optional_string(query.get("from")),
        date_to=_optional_string(query.get("to")),
    )


def is_iso_date(value: Optional[str]) -> bool:
    return parse_iso(value) is not None


def compute_usage_aggregate(rows: Iterable[Tuple[Optional[int], Optional[int]]]) -> UsageAggregate:
    """Sum (duration_seconds, consumed_minutes) pairs, treating None as zero."""
    duration = 0
    minutes = 0
    for duration_seconds, consumed_minutes in rows:
        duration += duration_seconds or 0
        minutes += consumed_minutes or 0
    return UsageAggregate(total_duration_seconds=duration, total_consumed_minutes=minutes)
