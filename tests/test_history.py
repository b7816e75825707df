"""
Tests for session history filters and usage totals.
"""
from copilot_guard.core.history import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    compute_usage_aggregate,
    is_iso_date,
    parse_history_filters,
)


class TestHistoryFilters:
    """Test query parsing."""

    def test_defaults(self):
        filters = parse_history_filters({})

        assert filters.page == 1
        assert filters.page_size == DEFAULT_PAGE_SIZE
        assert filters.offset == 0
        assert filters.status is None

    def test_page_and_size(self):
        filters = parse_history_filters({"page": "3", "pageSize": "10"})

        assert filters.offset == 20

    def test_invalid_numbers_fall_back(self):
        filters = parse_history_filters({"page": "-2", "pageSize": "abc"})

        assert filters.page == 1
        assert filters.page_size == DEFAULT_PAGE_SIZE

    def test_page_size_clamped(self):
        assert parse_history_filters({"pageSize": "5000"}).page_size == MAX_PAGE_SIZE

    def test_string_filters_trimmed(self):
        filters = parse_history_filters({"status": " stopped ", "mode": "", "from": "2024-01-01"})

        assert filters.status == "stopped"
        assert filters.mode is None
        assert filters.date_from == "2024-01-01"


class TestUsageAggregate:
    """Test usage totals."""

    def test_sums_with_nulls_as_zero(self):
        usage = compute_usage_aggregate([(60, 1), (None, 2), (30, None)])

        assert usage.total_duration_seconds == 90
        assert usage.total_consumed_minutes == 3

    def test_empty(self):
        usage = compute_usage_aggregate([])

        assert usage.total_duration_seconds == 0
        assert usage.total_consumed_minutes == 0


class TestIsoDate:
    def test_valid_and_invalid(self):
        assert is_iso_date("2024-01-01T00:00:00Z")
        assert is_iso_date("2024-01-01")
        assert not is_iso_date("January 1st")
        assert not is_iso_date(None)
