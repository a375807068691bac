"""
Cost projection and forecasting.

Projects spend forward from a base period. The projection is a simple
extrapolation of daily spend; confidence is a fixed heuristic per method,
not a statistical interval.
"""

from datetime import tzinfo
from typing import Iterable, List, Optional

from ..storage.models import CostProjection, ProjectionRequest, TrendDataPoint, UsageRecord
from .analytics import bucket_metric
from .metrics import Interval, Metric, ProjectionMethod, ProjectionPeriod
from .query import filter_records
from .rounding import round_count, round_half_up
from .timeutil import parse_timestamp

SECONDS_PER_DAY = 24 * 60 * 60
DEFAULT_PROJECTION_DAYS = 30

LINEAR_CONFIDENCE_WITH_HISTORY = 0.85
LINEAR_CONFIDENCE = 0.6
LINEAR_HISTORY_DAYS = 7
EXPONENTIAL_CONFIDENCE = 0.7
AVERAGE_CONFIDENCE = 0.75


def growth_ratio(trend: List[TrendDataPoint]) -> float:
    """Mean daily value of the later half of the trend over the earlier half.

    1.0 when there are fewer than two days or the earlier half is zero.
    """
    if len(trend) < 2:
        return 1.0
    middle = len(trend) // 2
    first = [point.value for point in trend[:middle]]
    second = [point.value for point in trend[middle:]]
    first_mean = sum(first) / len(first)
    second_mean = sum(second) / len(second)
    if first_mean <= 0:
        return 1.0
    return second_mean / first_mean


def project_cost(
    records: Iterable[UsageRecord],
    request: ProjectionRequest,
    tz: Optional[tzinfo],
) -> CostProjection:
    """Project cost, tokens and requests over the requested period.

    Methods:
    - linear: average daily cost of the base period times the projection days
    - exponential: linear estimate scaled by the half-over-half growth ratio
    - seasonal, average: same formula as linear with fixed confidence

    Args:
        records: Candidate records; the request's base period and filters apply
        request: Base period, projection period, method and filters
        tz: Timezone for daily bucketing

    Returns:
        CostProjection with the daily history and one projected point at
        the end of the base period
    """
    matched = filter_records(records, request.to_filter())
    historical = bucket_metric(matched, Interval.DAY, Metric.COST, tz)

    total_cost = sum(r.cost_usd or 0.0 for r in matched)
    total_tokens = sum(r.total_tokens or 0 for r in matched)
    total_requests = len(matched)

    base_start = parse_timestamp(request.base_start_time)
    base_end = parse_timestamp(request.base_end_time)
    base_days = max(1.0, (base_end - base_start).total_seconds() / SECONDS_PER_DAY)

    period = ProjectionPeriod.parse(request.project_period)
    projection_days = period.days if period is not None else DEFAULT_PROJECTION_DAYS

    daily_cost = total_cost / base_days
    method = ProjectionMethod.parse(request.method)
    if method is ProjectionMethod.LINEAR:
        projected_cost = daily_cost * projection_days
        confidence = (
            LINEAR_CONFIDENCE_WITH_HISTORY
            if len(historical) >= LINEAR_HISTORY_DAYS
            else LINEAR_CONFIDENCE
        )
    elif method is ProjectionMethod.EXPONENTIAL:
        projected_cost = daily_cost * projection_days * growth_ratio(historical)
        confidence = EXPONENTIAL_CONFIDENCE
    else:
        # seasonal, average and unsupported methods
        projected_cost = daily_cost * projection_days
        confidence = AVERAGE_CONFIDENCE

    ratio = projection_days / base_days
    projected_requests = round_count(total_requests * ratio)

    return CostProjection(
        method=request.method,
        base_period={
            "start_time": request.base_start_time,
            "end_time": request.base_end_time,
        },
        projected_cost=round_half_up(projected_cost, 2),
        projected_tokens=round_count(total_tokens * ratio),
        projected_requests=projected_requests,
        confidence=confidence,
        historical_trend=historical,
        projected_trend=[TrendDataPoint(
            timestamp=request.base_end_time,
            value=round_half_up(projected_cost, 2),
            count=projected_requests,
        )],
    )
