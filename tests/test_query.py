"""
Unit tests for the query engine.

Tests filtering, aggregation, multi-key sorting and pagination.
"""

import logging

import pytest

from token_meter.core.query import compute_aggregates, filter_records, sort_records
from token_meter.storage.factory import create_storage
from token_meter.storage.models import OrderBy, UsageFilter, UsageQuery, UsageRecord


def _usage(request_id, **overrides) -> UsageRecord:
    values = {
        "timestamp": "2025-01-10T08:00:00Z",
        "service": "openai",
        "model": "gpt-4",
        "request_id": request_id,
        "client_id": "client-a",
    }
    values.update(overrides)
    return UsageRecord(**values)


class TestQueryUsage:
    """Test query_usage against a populated store."""

    def setup_method(self):
        """Store three records A, B and C."""
        self.storage = create_storage({"backend": "memory", "timezone": "UTC"})
        self.storage.store_usage_records("client-a", [
            {"timestamp": "2025-01-10T08:00:00Z", "service": "openai", "model": "gpt-4",
             "cost_usd": 0.10, "total_tokens": 100, "request_id": "A", "session_id": "s1"},
            {"timestamp": "2025-01-10T14:00:00Z", "service": "openai", "model": "gpt-4o",
             "cost_usd": 0.15, "total_tokens": 200, "request_id": "B", "user_id": "u1"},
        ])
        self.storage.store_usage_records("client-b", [
            {"timestamp": "2025-01-11T09:00:00Z", "service": "anthropic", "model": "claude",
             "cost_usd": 0.08, "total_tokens": 50, "request_id": "C", "application": "search"},
        ])

    def _ids(self, result):
        return [record.request_id for record in result.records]

    def test_no_filter_returns_all_in_store_order(self):
        """Without predicates every record matches, in insertion order."""
        result = self.storage.query_usage(UsageQuery())
        assert self._ids(result) == ["A", "B", "C"]
        assert result.total_records == 3

    def test_service_filter(self):
        """Filtering by service returns exactly the matching records."""
        result = self.storage.query_usage(UsageQuery(services=["openai"]))
        assert self._ids(result) == ["A", "B"]

    def test_sum_and_avg_aggregates(self):
        """Aggregates are computed over the matched set."""
        result = self.storage.query_usage(UsageQuery(aggregates=["count", "sum", "avg"]))

        assert result.aggregates["count"] == 3
        assert result.aggregates["sum_cost_usd"] == pytest.approx(0.33)
        assert result.aggregates["sum_total_tokens"] == 350
        assert result.aggregates["avg_cost_usd"] == pytest.approx(0.11)

    def test_time_range_inclusive_start_exclusive_end(self):
        """Start bound is inclusive and end bound exclusive."""
        result = self.storage.query_usage(UsageQuery(
            start_time="2025-01-10T08:00:00Z",
            end_time="2025-01-10T14:00:00Z",
        ))
        assert self._ids(result) == ["A"]

    def test_time_range_compares_instants(self):
        """Bounds in other offsets are compared as instants."""
        result = self.storage.query_usage(UsageQuery(start_time="2025-01-10T15:00:00+02:00"))
        assert self._ids(result) == ["B", "C"]

    def test_client_and_label_filters(self):
        """Client, application, session and user predicates AND together."""
        assert self._ids(self.storage.query_usage(UsageQuery(client_ids=["client-b"]))) == ["C"]
        assert self._ids(self.storage.query_usage(UsageQuery(applications=["search"]))) == ["C"]
        assert self._ids(self.storage.query_usage(UsageQuery(session_id="s1"))) == ["A"]
        assert self._ids(self.storage.query_usage(UsageQuery(user_id="u1"))) == ["B"]
        assert self._ids(self.storage.query_usage(
            UsageQuery(client_ids=["client-a"], models=["gpt-4o"])
        )) == ["B"]

    def test_empty_lists_do_not_filter(self):
        """Empty membership lists match everything."""
        result = self.storage.query_usage(UsageQuery(services=[], client_ids=[]))
        assert result.total_records == 3

    def test_pagination_after_sort(self):
        """limit/offset page the sorted set; total reflects all matches."""
        result = self.storage.query_usage(UsageQuery(
            order_by=[OrderBy(field="cost_usd", desc=True)],
            limit=1,
            offset=1,
            aggregates=["count"],
        ))
        assert self._ids(result) == ["A"]
        assert result.total_records == 3
        assert result.aggregates["count"] == 3

    def test_offset_past_end(self):
        """An offset beyond the matches returns an empty page."""
        result = self.storage.query_usage(UsageQuery(offset=10))
        assert result.records == []
        assert result.total_records == 3

    def test_unknown_aggregate_logged(self, caplog):
        """Unsupported aggregate names are ignored with a warning."""
        with caplog.at_level(logging.WARNING):
            result = self.storage.query_usage(UsageQuery(aggregates=["median"]))
        assert result.aggregates == {}
        assert "Unsupported aggregate 'median'" in caplog.text

    def test_invalid_time_bound_raises(self):
        """A malformed time bound is a caller error."""
        with pytest.raises(ValueError):
            self.storage.query_usage(UsageQuery(start_time="last week"))


class TestSortRecords:
    """Test multi-key sorting."""

    def test_descending_cost(self):
        """Records sort by a numeric key."""
        records = [_usage("A", cost_usd=0.10), _usage("B", cost_usd=0.15), _usage("C", cost_usd=0.08)]
        ordered = sort_records(records, [OrderBy(field="cost_usd", desc=True)])
        assert [r.request_id for r in ordered] == ["B", "A", "C"]

    def test_numbers_compare_numerically(self):
        """Token counts are not compared as strings."""
        records = [_usage("A", total_tokens=9), _usage("B", total_tokens=10)]
        ordered = sort_records(records, [OrderBy(field="total_tokens")])
        assert [r.request_id for r in ordered] == ["A", "B"]

    def test_nulls_last_ascending_first_descending(self):
        """Missing values sort last ascending and first descending."""
        records = [_usage("A", cost_usd=None), _usage("B", cost_usd=0.2), _usage("C", cost_usd=0.1)]

        ascending = sort_records(records, [OrderBy(field="cost_usd")])
        descending = sort_records(records, [OrderBy(field="cost_usd", desc=True)])

        assert [r.request_id for r in ascending] == ["C", "B", "A"]
        assert [r.request_id for r in descending] == ["A", "B", "C"]

    def test_stable_for_ties(self):
        """Records equal on every key keep their store order."""
        records = [_usage("A"), _usage("B", environment=None), _usage("C")]
        ordered = sort_records(records, [OrderBy(field="service"), OrderBy(field="environment")])
        assert [r.request_id for r in ordered] == ["A", "B", "C"]

    def test_secondary_key(self):
        """Later keys break ties in earlier ones."""
        records = [
            _usage("A", service="openai", cost_usd=0.1),
            _usage("B", service="anthropic", cost_usd=0.3),
            _usage("C", service="openai", cost_usd=0.2),
        ]
        ordered = sort_records(records, [OrderBy(field="service"), OrderBy(field="cost_usd", desc=True)])
        assert [r.request_id for r in ordered] == ["B", "C", "A"]

    def test_timestamps_sort_as_instants(self):
        """Timestamps in different offsets sort chronologically."""
        records = [
            _usage("A", timestamp="2025-01-10T08:00:00Z"),
            _usage("B", timestamp="2025-01-10T09:00:00+02:00"),
        ]
        ordered = sort_records(records, [OrderBy(field="timestamp")])
        assert [r.request_id for r in ordered] == ["B", "A"]


class TestFilterAndAggregate:
    """Test the pure helpers directly."""

    def test_filter_missing_label_excluded(self):
        """Records without the label never match a membership filter."""
        records = [_usage("A", environment="prod"), _usage("B")]
        matched = filter_records(records, UsageFilter(environments=["prod"]))
        assert [r.request_id for r in matched] == ["A"]

    def test_aggregates_on_empty_set(self):
        """Averages over nothing are zero."""
        aggregates = compute_aggregates([], ["count", "sum", "avg"])
        assert aggregates["count"] == 0
        assert aggregates["sum_cost_usd"] == 0
        assert aggregates["avg_cost_usd"] == 0.0

    def test_no_aggregates_requested(self):
        """Nothing is computed unless asked for."""
        assert compute_aggregates([_usage("A")], None) == {}
