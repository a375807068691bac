"""
Data models for the storage layer.

Defines the usage record, the request types accepted by the storage
plugin contract, and the computed result views it returns.
"""

import copy
import math
from dataclasses import dataclass, field, fields, is_dataclass, replace
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from ..errors import ConfigurationError, InvalidRecordError


# Fields that identify a record for deduplication, in fingerprint order.
FINGERPRINT_FIELDS = (
    "timestamp",
    "service",
    "model",
    "input_tokens",
    "output_tokens",
    "total_tokens",
    "cost_usd",
    "session_id",
    "request_id",
    "user_id",
    "application",
    "environment",
)

_TOKEN_FIELDS = ("input_tokens", "output_tokens", "total_tokens")
_LABEL_FIELDS = (
    "cost_model",
    "session_id",
    "request_id",
    "user_id",
    "application",
    "environment",
)

EXPORT_FORMATS = ("jsonl", "csv")
EXPORT_COMPRESSIONS = ("none", "gzip")


def _to_plain(value: Any) -> Any:
    """Convert dataclasses and read-only mappings into JSON-ready values."""
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if is_dataclass(value):
        return {f.name: _to_plain(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Mapping):
        return {k: _to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_plain(v) for v in value]
    return value


class _Serializable:
    """Mixin giving result views a plain ``to_dict`` for the JSON layer."""

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: _to_plain(getattr(self, f.name)) for f in fields(self)}


@dataclass(frozen=True)
class UsageRecord:
    """One metered LLM API call.

    Records are immutable once built. ``client_id``, ``ingested_at`` and
    ``record_hash`` are stamped by the store at ingestion time; values a
    client supplies for them are discarded. Corrections arrive as new
    records, never as edits.
    """
    timestamp: str
    service: str
    model: str
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    cost_usd: Optional[float] = None
    cost_model: Optional[str] = None
    session_id: Optional[str] = None
    request_id: Optional[str] = None
    user_id: Optional[str] = None
    application: Optional[str] = None
    environment: Optional[str] = None
    metadata: Optional[Mapping[str, Any]] = None
    client_id: Optional[str] = None
    ingested_at: Optional[str] = None
    record_hash: Optional[str] = None

    def __post_init__(self):
        """Freeze metadata so stored records can be shared with callers."""
        if self.metadata is not None and not isinstance(self.metadata, MappingProxyType):
            object.__setattr__(
                self, "metadata", MappingProxyType(copy.deepcopy(dict(self.metadata)))
            )

    @classmethod
    def from_dict(cls, raw: Any) -> "UsageRecord":
        """Build a record from a decoded JSON object.

        Missing required strings become empty so validation can reject
        them with the usual counters. Store-assigned fields are ignored.

        Raises:
            InvalidRecordError: If the payload is not a mapping or a field
                has a type that cannot be coerced
        """
        if isinstance(raw, MalformedRecord):
            raise InvalidRecordError(raw.reason)
        if not isinstance(raw, Mapping):
            raise InvalidRecordError(f"record must be an object, got {type(raw).__name__}")

        values: Dict[str, Any] = {}
        for name in ("timestamp", "service", "model"):
            values[name] = _coerce_str(raw.get(name), name) or ""
        for name in _TOKEN_FIELDS:
            values[name] = _coerce_count(raw.get(name), name)
        values["cost_usd"] = _coerce_cost(raw.get("cost_usd"))
        for name in _LABEL_FIELDS:
            values[name] = _coerce_str(raw.get(name), name)

        metadata = raw.get("metadata")
        if metadata is not None and not isinstance(metadata, Mapping):
            raise InvalidRecordError("metadata must be an object")
        values["metadata"] = metadata
        return cls(**values)

    def stamped(self, client_id: str, ingested_at: str, record_hash: str) -> "UsageRecord":
        """Return a copy carrying the store-assigned fields."""
        return replace(
            self, client_id=client_id, ingested_at=ingested_at, record_hash=record_hash
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready mapping; absent optional fields are omitted."""
        data: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            data[f.name] = _to_plain(value) if f.name == "metadata" else value
        return data


def _coerce_str(value: Any, name: str) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    raise InvalidRecordError(f"{name} must be a string")


def _coerce_count(value: Any, name: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidRecordError(f"{name} must be a number")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise InvalidRecordError(f"{name} must be a whole number")


def _coerce_cost(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidRecordError("cost_usd must be a number")
    return float(value)


# --- Ingestion ---

@dataclass(frozen=True)
class MalformedRecord:
    """Placeholder for an uploaded line that could not be decoded."""
    reason: str


@dataclass
class ClientRecordBatch:
    """Records reported by a single client."""
    client_id: str
    records: List[Any]


@dataclass
class IngestionResult(_Serializable):
    """Counters for one client's ingestion call."""
    records_processed: int = 0
    records_stored: int = 0
    records_duplicate: int = 0
    records_invalid: int = 0
    processing_time_ms: float = 0.0
    errors: List[str] = field(default_factory=list)


@dataclass
class BatchIngestionResult(_Serializable):
    """Per-client and total counters for a multi-client batch."""
    total_records_processed: int = 0
    total_records_stored: int = 0
    total_records_duplicate: int = 0
    total_records_invalid: int = 0
    client_results: Dict[str, IngestionResult] = field(default_factory=dict)
    processing_time_ms: float = 0.0


# --- Query ---

@dataclass(frozen=True)
class UsageFilter:
    """AND-combined record predicates shared by every read operation.

    Time bounds are ISO-8601 strings; start is inclusive, end exclusive.
    Empty or missing lists do not filter.
    """
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    client_ids: Optional[List[str]] = None
    services: Optional[List[str]] = None
    models: Optional[List[str]] = None
    applications: Optional[List[str]] = None
    environments: Optional[List[str]] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None


@dataclass(frozen=True)
class OrderBy:
    """One sort key of a usage query."""
    field: str
    desc: bool = False


@dataclass
class UsageQuery:
    """Filter, aggregate, sort and paginate stored records."""
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    client_ids: Optional[List[str]] = None
    services: Optional[List[str]] = None
    models: Optional[List[str]] = None
    applications: Optional[List[str]] = None
    environments: Optional[List[str]] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    aggregates: Optional[List[str]] = None
    order_by: Optional[List[OrderBy]] = None
    limit: int = 100
    offset: int = 0

    def to_filter(self) -> UsageFilter:
        return UsageFilter(
            start_time=self.start_time,
            end_time=self.end_time,
            client_ids=self.client_ids,
            services=self.services,
            models=self.models,
            applications=self.applications,
            environments=self.environments,
            session_id=self.session_id,
            user_id=self.user_id,
        )


@dataclass
class UsageQueryResult(_Serializable):
    records: List[UsageRecord]
    aggregates: Dict[str, float]
    total_records: int
    query_time_ms: float = 0.0


# --- Trends ---

@dataclass
class TrendRequest:
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    interval: str = "day"
    metric: str = "cost"
    client_ids: Optional[List[str]] = None
    services: Optional[List[str]] = None
    models: Optional[List[str]] = None

    def to_filter(self) -> UsageFilter:
        return UsageFilter(
            start_time=self.start_time,
            end_time=self.end_time,
            client_ids=self.client_ids,
            services=self.services,
            models=self.models,
        )


@dataclass
class TrendDataPoint(_Serializable):
    timestamp: str
    value: float
    count: int


@dataclass
class TrendData(_Serializable):
    data_points: List[TrendDataPoint]
    total_value: float
    average_value: float
    metric: str
    interval: str


# --- Rankings ---

@dataclass
class TopUsageRequest:
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    group_by: str = "service"
    metric: str = "cost"
    limit: int = 10
    client_ids: Optional[List[str]] = None

    def to_filter(self) -> UsageFilter:
        return UsageFilter(
            start_time=self.start_time,
            end_time=self.end_time,
            client_ids=self.client_ids,
        )


@dataclass
class TopUsageRanking(_Serializable):
    name: str
    value: float
    percentage: float
    record_count: int


@dataclass
class TopUsageResult(_Serializable):
    rankings: List[TopUsageRanking]
    total_value: float
    requested_top: int


# --- Cost breakdown ---

@dataclass
class CostBreakdownRequest:
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    breakdown_by: List[str] = field(default_factory=lambda: ["service"])
    client_ids: Optional[List[str]] = None
    services: Optional[List[str]] = None
    models: Optional[List[str]] = None

    def to_filter(self) -> UsageFilter:
        return UsageFilter(
            start_time=self.start_time,
            end_time=self.end_time,
            client_ids=self.client_ids,
            services=self.services,
            models=self.models,
        )


@dataclass
class CostBreakdownEntry(_Serializable):
    dimensions: Dict[str, str]
    cost: float
    percentage: float
    token_count: int
    request_count: int


@dataclass
class CostBreakdown(_Serializable):
    total_cost: float
    breakdowns: List[CostBreakdownEntry]
    currency: str = "USD"


# --- Summary ---

@dataclass
class UsageSummaryRequest:
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    client_ids: Optional[List[str]] = None

    def to_filter(self) -> UsageFilter:
        return UsageFilter(
            start_time=self.start_time,
            end_time=self.end_time,
            client_ids=self.client_ids,
        )


@dataclass
class DimensionBreakdown(_Serializable):
    """Totals for one service, model or client within a summary."""
    name: str
    cost: float
    tokens: int
    requests: int
    percentage: float


@dataclass
class DailyTrendPoint(_Serializable):
    date: str
    cost: float
    tokens: int
    requests: int


@dataclass
class UsageSummary(_Serializable):
    period: Dict[str, Optional[str]]
    total_cost: float
    total_tokens: int
    total_requests: int
    service_breakdown: Dict[str, DimensionBreakdown]
    model_breakdown: Dict[str, DimensionBreakdown]
    client_breakdown: Dict[str, DimensionBreakdown]
    daily_trend: List[DailyTrendPoint]
    cost_growth_rate: float
    token_growth_rate: float


# --- Projection ---

@dataclass
class ProjectionRequest:
    base_start_time: str
    base_end_time: str
    project_period: str = "monthly"
    method: str = "linear"
    client_ids: Optional[List[str]] = None
    services: Optional[List[str]] = None
    models: Optional[List[str]] = None

    def to_filter(self) -> UsageFilter:
        return UsageFilter(
            start_time=self.base_start_time,
            end_time=self.base_end_time,
            client_ids=self.client_ids,
            services=self.services,
            models=self.models,
        )


@dataclass
class CostProjection(_Serializable):
    method: str
    base_period: Dict[str, str]
    projected_cost: float
    projected_tokens: int
    projected_requests: int
    confidence: float
    historical_trend: List[TrendDataPoint]
    projected_trend: List[TrendDataPoint]


# --- Retention ---

@dataclass(frozen=True)
class RetentionPolicy:
    """Retention windows in days.

    A record survives if it is inside the longest window that applies to
    it: the default, its service override, or its client override.
    """
    default_retention_days: int
    service_retention: Mapping[str, int] = field(default_factory=dict)
    client_retention: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self):
        """Reject negative or non-numeric day counts."""
        _check_days(self.default_retention_days, "default_retention_days")
        for service, days in self.service_retention.items():
            _check_days(days, f"service_retention.{service}")
        for client_id, days in self.client_retention.items():
            _check_days(days, f"client_retention.{client_id}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RetentionPolicy":
        """Build a policy from a plain mapping, rejecting unknown keys."""
        if not isinstance(data, Mapping):
            raise ConfigurationError("retention policy must be a dictionary")
        allowed_keys = {"default_retention_days", "service_retention", "client_retention"}
        unknown_keys = set(data.keys()) - allowed_keys
        if unknown_keys:
            raise ConfigurationError(f"Unknown retention keys: {unknown_keys}")
        if "default_retention_days" not in data:
            raise ConfigurationError("Missing required 'default_retention_days'")

        service_retention = data.get("service_retention") or {}
        client_retention = data.get("client_retention") or {}
        if not isinstance(service_retention, Mapping):
            raise ConfigurationError("'service_retention' must be a dictionary")
        if not isinstance(client_retention, Mapping):
            raise ConfigurationError("'client_retention' must be a dictionary")

        return cls(
            default_retention_days=data["default_retention_days"],
            service_retention=dict(service_retention),
            client_retention=dict(client_retention),
        )


def _check_days(value: Any, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{name} must be a number of days")
    if isinstance(value, float) and not math.isfinite(value):
        raise ConfigurationError(f"{name} must be a finite number of days")
    if value < 0:
        raise ConfigurationError(f"{name} must be >= 0")


@dataclass
class RetentionInfo(_Serializable):
    total_records: int
    oldest_record: Optional[str]
    newest_record: Optional[str]
    records_by_age: Dict[str, int]
    estimated_size_gb: float


@dataclass
class RetentionResult(_Serializable):
    records_deleted: int
    storage_freed_gb: float
    processing_time_ms: float


# --- Export and management ---

@dataclass
class ExportRequest:
    destination: str
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    format: str = "jsonl"
    compression: str = "none"
    client_ids: Optional[List[str]] = None
    services: Optional[List[str]] = None
    models: Optional[List[str]] = None

    def __post_init__(self):
        if self.format not in EXPORT_FORMATS:
            raise ValueError(f"format must be one of: {list(EXPORT_FORMATS)}")
        if self.compression not in EXPORT_COMPRESSIONS:
            raise ValueError(f"compression must be one of: {list(EXPORT_COMPRESSIONS)}")

    def to_filter(self) -> UsageFilter:
        return UsageFilter(
            start_time=self.start_time,
            end_time=self.end_time,
            client_ids=self.client_ids,
            services=self.services,
            models=self.models,
        )


@dataclass
class ExportResult(_Serializable):
    records_exported: int
    file_size_bytes: int
    file_path: str
    processing_time_ms: float


@dataclass
class StorageHealth(_Serializable):
    status: str
    message: str
    checked_at: str


@dataclass
class StorageStats(_Serializable):
    total_records: int
    total_size_gb: float
    records_today: int


@dataclass
class OptimizationResult(_Serializable):
    status: str
    processing_time_ms: float
