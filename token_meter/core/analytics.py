"""
Usage analytics over matched records.

Trends, rankings, cost breakdowns and period summaries. All results are
computed fresh from the records passed in; nothing is cached or stored.
"""

from dataclasses import dataclass
from datetime import tzinfo
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..storage.models import (
    CostBreakdown,
    CostBreakdownEntry,
    CostBreakdownRequest,
    DailyTrendPoint,
    DimensionBreakdown,
    TopUsageRanking,
    TopUsageRequest,
    TopUsageResult,
    TrendData,
    TrendDataPoint,
    TrendRequest,
    UsageRecord,
    UsageSummary,
    UsageSummaryRequest,
)
from .buckets import bucket_start, day_key
from .metrics import Dimension, Interval, Metric, dimension_key, metric_value
from .query import filter_records, record_time
from .rounding import percentage, round_half_up
from .timeutil import format_utc


@dataclass
class _Totals:
    cost: float = 0.0
    tokens: int = 0
    requests: int = 0

    def add(self, record: UsageRecord) -> None:
        self.cost += record.cost_usd or 0.0
        self.tokens += record.total_tokens or 0
        self.requests += 1


def bucket_metric(
    records: Iterable[UsageRecord],
    interval: Optional[Interval],
    metric: Optional[Metric],
    tz: Optional[tzinfo],
) -> List[TrendDataPoint]:
    """Sum ``metric`` per calendar bucket, sorted by bucket start."""
    buckets: Dict[object, List[float]] = {}
    for record in records:
        start = bucket_start(record_time(record), interval, tz)
        slot = buckets.setdefault(start, [0, 0])
        slot[0] += metric_value(metric, record)
        slot[1] += 1

    monetary = metric is None or metric.is_monetary
    points = []
    for start in sorted(buckets):
        value, count = buckets[start]
        points.append(TrendDataPoint(
            timestamp=format_utc(start),
            value=round_half_up(value, 2) if monetary else value,
            count=count,
        ))
    return points


def compute_trend(records: Iterable[UsageRecord], request: TrendRequest, tz: Optional[tzinfo]) -> TrendData:
    """Bucket matched records by calendar interval and sum one metric.

    ``average_value`` is the mean across buckets, not across records.
    """
    matched = filter_records(records, request.to_filter())
    points = bucket_metric(
        matched, Interval.parse(request.interval), Metric.parse(request.metric), tz
    )

    total_value = sum(point.value for point in points)
    average_value = total_value / len(points) if points else 0.0

    return TrendData(
        data_points=points,
        total_value=round_half_up(total_value, 2),
        average_value=round_half_up(average_value, 2),
        metric=request.metric,
        interval=request.interval,
    )


def compute_top_usage(records: Iterable[UsageRecord], request: TopUsageRequest) -> TopUsageResult:
    """Rank groups by summed metric, highest first.

    Percentages are shares of the total across all groups, including the
    ones cut off by ``limit``.
    """
    matched = filter_records(records, request.to_filter())
    dimension = Dimension.parse(request.group_by)
    metric = Metric.parse(request.metric)

    groups: Dict[str, List[float]] = {}
    for record in matched:
        slot = groups.setdefault(dimension_key(dimension, record), [0, 0])
        slot[0] += metric_value(metric, record)
        slot[1] += 1

    total_value = sum(value for value, _ in groups.values())
    ranked = sorted(groups.items(), key=lambda item: item[1][0], reverse=True)

    rankings = [
        TopUsageRanking(
            name=name,
            value=round_half_up(value, 2),
            percentage=percentage(value, total_value),
            record_count=count,
        )
        for name, (value, count) in ranked[:max(0, request.limit)]
    ]

    return TopUsageResult(
        rankings=rankings,
        total_value=round_half_up(total_value, 2),
        requested_top=request.limit,
    )


def compute_cost_breakdown(records: Iterable[UsageRecord], request: CostBreakdownRequest) -> CostBreakdown:
    """Cost per distinct combination of the requested dimensions."""
    matched = filter_records(records, request.to_filter())
    dimensions = [(name, Dimension.parse(name)) for name in request.breakdown_by]

    groups: Dict[Tuple[str, ...], _Totals] = {}
    for record in matched:
        key = tuple(dimension_key(dimension, record) for _, dimension in dimensions)
        groups.setdefault(key, _Totals()).add(record)

    total_cost = sum(totals.cost for totals in groups.values())
    entries = [
        CostBreakdownEntry(
            dimensions={name: value for (name, _), value in zip(dimensions, key)},
            cost=round_half_up(totals.cost, 2),
            percentage=percentage(totals.cost, total_cost),
            token_count=totals.tokens,
            request_count=totals.requests,
        )
        for key, totals in sorted(groups.items(), key=lambda item: item[1].cost, reverse=True)
    ]

    return CostBreakdown(
        total_cost=round_half_up(total_cost, 2),
        breakdowns=entries,
        currency="USD",
    )


def _breakdown_by(records: Sequence[UsageRecord], dimension: Dimension, total_cost: float) -> Dict[str, DimensionBreakdown]:
    groups: Dict[str, _Totals] = {}
    for record in records:
        groups.setdefault(dimension.key_of(record), _Totals()).add(record)
    return {
        name: DimensionBreakdown(
            name=name,
            cost=round_half_up(totals.cost, 2),
            tokens=totals.tokens,
            requests=totals.requests,
            percentage=percentage(totals.cost, total_cost),
        )
        for name, totals in groups.items()
    }


def daily_trend(records: Iterable[UsageRecord], tz: Optional[tzinfo]) -> List[DailyTrendPoint]:
    """Cost, tokens and requests per calendar day, oldest first."""
    days: Dict[str, _Totals] = {}
    for record in records:
        days.setdefault(day_key(record_time(record), tz), _Totals()).add(record)
    return [
        DailyTrendPoint(
            date=date,
            cost=round_half_up(totals.cost, 2),
            tokens=totals.tokens,
            requests=totals.requests,
        )
        for date, totals in sorted(days.items())
    ]


def growth_rate(values: Sequence[float]) -> float:
    """Percent change from the first half of ``values`` to the second.

    Halves are split by number of entries, the odd one going to the
    second half. Zero when there are fewer than two entries or the first
    half sums to zero.
    """
    if len(values) < 2:
        return 0.0
    middle = len(values) // 2
    first = sum(values[:middle])
    second = sum(values[middle:])
    if first <= 0:
        return 0.0
    return round_half_up((second - first) / first * 100, 1)


def compute_usage_summary(
    records: Iterable[UsageRecord],
    request: UsageSummaryRequest,
    tz: Optional[tzinfo],
) -> UsageSummary:
    """Totals, per-service/model/client breakdowns, daily trend and growth."""
    matched = filter_records(records, request.to_filter())

    total_cost = sum(r.cost_usd or 0.0 for r in matched)
    total_tokens = sum(r.total_tokens or 0 for r in matched)
    trend = daily_trend(matched, tz)

    return UsageSummary(
        period={"start_time": request.start_time, "end_time": request.end_time},
        total_cost=round_half_up(total_cost, 2),
        total_tokens=total_tokens,
        total_requests=len(matched),
        service_breakdown=_breakdown_by(matched, Dimension.SERVICE, total_cost),
        model_breakdown=_breakdown_by(matched, Dimension.MODEL, total_cost),
        client_breakdown=_breakdown_by(matched, Dimension.CLIENT_ID, total_cost),
        daily_trend=trend,
        cost_growth_rate=growth_rate([point.cost for point in trend]),
        token_growth_rate=growth_rate([point.tokens for point in trend]),
    )
