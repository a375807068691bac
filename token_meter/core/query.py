"""
Record filtering, sorting, aggregation and pagination.

Every read operation starts from ``filter_records``. Records are frozen,
so matched records are returned as-is rather than copied.
"""

import logging
import time
from functools import cmp_to_key
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..storage.models import OrderBy, UsageFilter, UsageQuery, UsageQueryResult, UsageRecord
from .timeutil import parse_timestamp

logger = logging.getLogger(__name__)

SUPPORTED_AGGREGATES = ("count", "sum", "avg")

_TIME_FIELDS = ("timestamp", "ingested_at")


def record_time(record: UsageRecord):
    """Event time of a stored record as an aware UTC datetime."""
    return parse_timestamp(record.timestamp)


def _membership(values: Optional[Sequence[str]]) -> Optional[frozenset]:
    return frozenset(values) if values else None


def filter_records(records: Iterable[UsageRecord], flt: UsageFilter) -> List[UsageRecord]:
    """Return the records matching every predicate of ``flt``, in store order.

    Raises:
        ValueError: If a time bound is not an ISO-8601 timestamp
    """
    start = parse_timestamp(flt.start_time) if flt.start_time else None
    end = parse_timestamp(flt.end_time) if flt.end_time else None
    client_ids = _membership(flt.client_ids)
    services = _membership(flt.services)
    models = _membership(flt.models)
    applications = _membership(flt.applications)
    environments = _membership(flt.environments)

    matched = []
    for record in records:
        if start is not None or end is not None:
            instant = record_time(record)
            if start is not None and instant < start:
                continue
            if end is not None and instant >= end:
                continue
        if client_ids is not None and (record.client_id or "") not in client_ids:
            continue
        if services is not None and record.service not in services:
            continue
        if models is not None and record.model not in models:
            continue
        if applications is not None and (record.application or "") not in applications:
            continue
        if environments is not None and (record.environment or "") not in environments:
            continue
        if flt.session_id and record.session_id != flt.session_id:
            continue
        if flt.user_id and record.user_id != flt.user_id:
            continue
        matched.append(record)
    return matched


def compute_aggregates(records: Sequence[UsageRecord], requested: Optional[Sequence[str]]) -> Dict[str, float]:
    """Aggregate the matched set: ``count``, ``sum`` and ``avg``."""
    aggregates: Dict[str, float] = {}
    if not requested:
        return aggregates

    for name in requested:
        if name not in SUPPORTED_AGGREGATES:
            logger.warning("Unsupported aggregate %r", name)

    total = len(records)
    if "count" in requested:
        aggregates["count"] = total
    if "sum" in requested:
        aggregates["sum_cost_usd"] = sum(r.cost_usd or 0.0 for r in records)
        aggregates["sum_input_tokens"] = sum(r.input_tokens or 0 for r in records)
        aggregates["sum_output_tokens"] = sum(r.output_tokens or 0 for r in records)
        aggregates["sum_total_tokens"] = sum(r.total_tokens or 0 for r in records)
    if "avg" in requested:
        aggregates["avg_cost_usd"] = (
            sum(r.cost_usd or 0.0 for r in records) / total if total > 0 else 0.0
        )
    return aggregates


def _sort_value(record: UsageRecord, field_name: str) -> Any:
    value = getattr(record, field_name, None)
    if value is not None and field_name in _TIME_FIELDS:
        return parse_timestamp(value)
    return value


def _less_than(a: Any, b: Any) -> bool:
    try:
        return a < b
    except TypeError:
        return str(a) < str(b)


def sort_records(records: Sequence[UsageRecord], order_by: Sequence[OrderBy]) -> List[UsageRecord]:
    """Multi-key stable sort.

    Missing values sort last ascending and first descending; records
    equal on every key keep their store order.
    """
    def compare(a: UsageRecord, b: UsageRecord) -> int:
        for rule in order_by:
            a_value = _sort_value(a, rule.field)
            b_value = _sort_value(b, rule.field)
            if a_value is None and b_value is None:
                continue
            if a_value is None:
                return -1 if rule.desc else 1
            if b_value is None:
                return 1 if rule.desc else -1
            if a_value == b_value:
                continue
            result = -1 if _less_than(a_value, b_value) else 1
            return -result if rule.desc else result
        return 0

    return sorted(records, key=cmp_to_key(compare))


def run_query(records: Iterable[UsageRecord], query: UsageQuery) -> UsageQueryResult:
    """Filter, aggregate, sort, then paginate.

    ``total_records`` and the aggregates describe the whole matched set,
    not the returned page.
    """
    started = time.perf_counter()
    matched = filter_records(records, query.to_filter())
    aggregates = compute_aggregates(matched, query.aggregates)

    ordered = sort_records(matched, query.order_by) if query.order_by else matched

    offset = max(0, query.offset or 0)
    limit = max(0, query.limit if query.limit is not None else 100)
    page = ordered[offset:offset + limit]

    return UsageQueryResult(
        records=page,
        aggregates=aggregates,
        total_records=len(matched),
        query_time_ms=(time.perf_counter() - started) * 1000,
    )
