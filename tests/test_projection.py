"""
Unit tests for cost projection.

Tests projection methods, confidence heuristics and scaling.
"""

import logging
from datetime import timezone

import pytest

from token_meter.core.projection import growth_ratio, project_cost
from token_meter.storage.models import ProjectionRequest, TrendDataPoint, UsageRecord

UTC = timezone.utc


def _daily_records(costs, start_day=1):
    """One record per day of January 2025 with the given costs."""
    return [
        UsageRecord(
            timestamp=f"2025-01-{start_day + offset:02d}T12:00:00Z",
            service="openai",
            model="gpt-4",
            cost_usd=cost,
            total_tokens=100,
            client_id="client-a",
        )
        for offset, cost in enumerate(costs)
    ]


def _request(days, **overrides):
    values = {
        "base_start_time": "2025-01-01T00:00:00Z",
        "base_end_time": f"2025-01-{1 + days:02d}T00:00:00Z",
    }
    values.update(overrides)
    return ProjectionRequest(**values)


class TestLinearProjection:
    """Test the linear method."""

    def test_monthly_from_ten_days(self):
        """Average daily cost times thirty days."""
        result = project_cost(_daily_records([1.0] * 10), _request(10), UTC)

        assert result.projected_cost == 30.0
        assert result.confidence == 0.85
        assert result.method == "linear"
        assert len(result.historical_trend) == 10

    def test_low_confidence_with_little_history(self):
        """Fewer than seven daily buckets lowers confidence."""
        result = project_cost(_daily_records([1.0] * 3), _request(10), UTC)

        assert result.projected_cost == 9.0
        assert result.confidence == 0.6

    @pytest.mark.parametrize("period,expected", [("daily", 1.0), ("weekly", 7.0), ("monthly", 30.0)])
    def test_projection_periods(self, period, expected):
        """Projection days follow the requested period."""
        result = project_cost(_daily_records([1.0] * 10), _request(10, project_period=period), UTC)
        assert result.projected_cost == expected

    def test_unknown_period_uses_thirty_days(self, caplog):
        """Unsupported periods fall back to thirty days with a warning."""
        with caplog.at_level(logging.WARNING):
            result = project_cost(
                _daily_records([1.0] * 10), _request(10, project_period="quarterly"), UTC
            )
        assert result.projected_cost == 30.0
        assert "Unsupported projection period 'quarterly'" in caplog.text

    def test_tokens_and_requests_scale(self):
        """Tokens and requests scale by projection days over base days."""
        result = project_cost(_daily_records([1.0] * 4), _request(4), UTC)

        assert result.projected_requests == 30
        assert result.projected_tokens == 3000

    def test_short_base_period_counts_as_one_day(self):
        """Base periods under a day are treated as one day."""
        records = _daily_records([2.0])
        request = ProjectionRequest(
            base_start_time="2025-01-01T06:00:00Z",
            base_end_time="2025-01-01T18:00:00Z",
            project_period="weekly",
        )
        assert project_cost(records, request, UTC).projected_cost == 14.0

    def test_projected_point_at_base_end(self):
        """One projected point sits at the end of the base period."""
        request = _request(10)
        result = project_cost(_daily_records([1.0] * 10), request, UTC)

        assert len(result.projected_trend) == 1
        assert result.projected_trend[0].timestamp == request.base_end_time
        assert result.projected_trend[0].value == result.projected_cost
        assert result.projected_trend[0].count == result.projected_requests
        assert result.base_period == {
            "start_time": request.base_start_time,
            "end_time": request.base_end_time,
        }

    def test_records_outside_base_period_ignored(self):
        """Only the base period feeds the projection."""
        records = _daily_records([1.0] * 10) + _daily_records([50.0], start_day=20)
        assert project_cost(records, _request(10), UTC).projected_cost == 30.0

    def test_empty_base_period(self):
        """No history projects zero."""
        result = project_cost([], _request(10), UTC)
        assert result.projected_cost == 0.0
        assert result.projected_requests == 0
        assert result.historical_trend == []


class TestOtherMethods:
    """Test exponential, seasonal and average methods."""

    def test_exponential_scales_by_growth(self):
        """Later-half spend growth multiplies the linear estimate."""
        records = _daily_records([1.0, 1.0, 3.0, 3.0])
        linear = project_cost(records, _request(4), UTC)
        exponential = project_cost(records, _request(4, method="exponential"), UTC)

        assert linear.projected_cost == 60.0
        assert exponential.projected_cost == 180.0
        assert exponential.confidence == 0.7

    def test_exponential_not_below_linear_for_rising_trend(self):
        """A non-decreasing trend never projects below linear."""
        records = _daily_records([0.5, 0.5, 0.75, 1.0, 1.0, 2.0])
        linear = project_cost(records, _request(6), UTC)
        exponential = project_cost(records, _request(6, method="exponential"), UTC)
        assert exponential.projected_cost >= linear.projected_cost

    @pytest.mark.parametrize("method", ["seasonal", "average", "arima"])
    def test_average_formula(self, method):
        """Seasonal, average and unknown methods use the linear formula."""
        result = project_cost(_daily_records([1.0] * 10), _request(10, method=method), UTC)
        assert result.projected_cost == 30.0
        assert result.confidence == 0.75
        assert result.method == method


class TestGrowthRatio:
    """Test the half-over-half growth ratio."""

    def _points(self, values):
        return [TrendDataPoint(timestamp=str(i), value=v, count=1) for i, v in enumerate(values)]

    def test_ratio_of_half_means(self):
        """Means of the two halves are compared."""
        assert growth_ratio(self._points([1.0, 1.0, 2.0, 2.0])) == 2.0

    def test_odd_length(self):
        """The middle point belongs to the later half."""
        assert growth_ratio(self._points([1.0, 2.0, 4.0])) == 3.0

    def test_degenerate(self):
        """Too little history or a zero first half yields 1.0."""
        assert growth_ratio(self._points([5.0])) == 1.0
        assert growth_ratio(self._points([0.0, 5.0])) == 1.0
