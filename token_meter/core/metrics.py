"""
Closed vocabularies for metrics, grouping dimensions and projections.

Requests carry these as plain strings. ``parse`` maps a string to its
member or ``None``; callers fall back to the documented neutral value
and log the unsupported key instead of raising.
"""

import logging
from enum import Enum
from typing import Optional

from ..storage.models import UsageRecord

logger = logging.getLogger(__name__)


class _Vocabulary(Enum):

    @classmethod
    def parse(cls, value: Optional[str]):
        """Return the member named by ``value`` or ``None`` when unsupported."""
        try:
            return cls(value)
        except ValueError:
            logger.warning("Unsupported %s %r", cls._label(), value)
            return None

    @classmethod
    def _label(cls) -> str:
        return cls.__name__.lower()


class Metric(_Vocabulary):
    """Per-record quantities that can be summed."""
    COST = "cost"
    TOTAL_TOKENS = "total_tokens"
    INPUT_TOKENS = "input_tokens"
    OUTPUT_TOKENS = "output_tokens"
    REQUEST_COUNT = "request_count"

    @property
    def is_monetary(self) -> bool:
        return self is Metric.COST

    def value_of(self, record: UsageRecord) -> float:
        if self is Metric.COST:
            return record.cost_usd or 0.0
        if self is Metric.TOTAL_TOKENS:
            return record.total_tokens or 0
        if self is Metric.INPUT_TOKENS:
            return record.input_tokens or 0
        if self is Metric.OUTPUT_TOKENS:
            return record.output_tokens or 0
        if self is Metric.REQUEST_COUNT:
            return 1
        raise AssertionError(f"unhandled metric {self}")


class Dimension(_Vocabulary):
    """Record fields usable as grouping keys."""
    SERVICE = "service"
    MODEL = "model"
    CLIENT_ID = "client_id"
    APPLICATION = "application"
    ENVIRONMENT = "environment"

    def key_of(self, record: UsageRecord) -> str:
        if self is Dimension.SERVICE:
            return record.service
        if self is Dimension.MODEL:
            return record.model
        if self is Dimension.CLIENT_ID:
            return record.client_id or ""
        if self is Dimension.APPLICATION:
            return record.application or ""
        if self is Dimension.ENVIRONMENT:
            return record.environment or ""
        raise AssertionError(f"unhandled dimension {self}")


class Interval(_Vocabulary):
    """Trend bucket widths."""
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class ProjectionPeriod(_Vocabulary):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @property
    def days(self) -> int:
        return {
            ProjectionPeriod.DAILY: 1,
            ProjectionPeriod.WEEKLY: 7,
            ProjectionPeriod.MONTHLY: 30,
        }[self]

    @classmethod
    def _label(cls) -> str:
        return "projection period"


class ProjectionMethod(_Vocabulary):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    SEASONAL = "seasonal"
    AVERAGE = "average"

    @classmethod
    def _label(cls) -> str:
        return "projection method"


def metric_value(metric: Optional[Metric], record: UsageRecord) -> float:
    """Metric value of a record; unsupported metrics contribute zero."""
    return metric.value_of(record) if metric is not None else 0


def dimension_key(dimension: Optional[Dimension], record: UsageRecord) -> str:
    """Grouping key of a record; unsupported dimensions group under ``""``."""
    return dimension.key_of(record) if dimension is not None else ""
