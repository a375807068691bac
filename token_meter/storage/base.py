"""
Storage plugin contract.

``UsageStorage`` implements every operation of the contract once, on top
of a handful of backend primitives: atomic insert-if-absent by record
hash, a consistent snapshot of stored records, a retention sweep run
inside the backend's own critical section, and an export sink.
"""

import csv
import io
import json
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from ..core.analytics import compute_cost_breakdown, compute_top_usage, compute_trend, compute_usage_summary
from ..core.fingerprint import compute_record_hash
from ..core.projection import project_cost
from ..core.query import filter_records, run_query
from ..core.retention import build_retention_info, estimated_size_gb
from ..core.timeutil import format_utc, localize, parse_timestamp, resolve_timezone, to_local, utc_now
from ..core.validator import validation_error
from ..errors import ConfigurationError, InvalidRecordError, StorageBackendError
from .models import (
    BatchIngestionResult,
    ClientRecordBatch,
    CostBreakdown,
    CostBreakdownRequest,
    CostProjection,
    ExportRequest,
    ExportResult,
    IngestionResult,
    OptimizationResult,
    ProjectionRequest,
    RetentionInfo,
    RetentionPolicy,
    RetentionResult,
    StorageHealth,
    StorageStats,
    TopUsageRequest,
    TopUsageResult,
    TrendData,
    TrendRequest,
    UsageFilter,
    UsageQuery,
    UsageQueryResult,
    UsageRecord,
    UsageSummary,
    UsageSummaryRequest,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_REPORTED_ERRORS = 100

CSV_COLUMNS = (
    "timestamp", "service", "model", "input_tokens", "output_tokens",
    "total_tokens", "cost_usd", "cost_model", "session_id", "request_id",
    "user_id", "application", "environment", "metadata", "client_id",
    "ingested_at", "record_hash",
)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


class UsageStorage(ABC):
    """Base class for usage record storage backends.

    Ingestion validates, fingerprints and stamps each record here; the
    backend only decides, atomically per record, whether the hash is new.
    Reads work on a snapshot, so a concurrent ingestion or retention sweep
    is either fully visible or not at all.
    """

    backend_name = "abstract"

    def __init__(self):
        self._tz = None
        self._max_reported_errors = DEFAULT_MAX_REPORTED_ERRORS

    # --- Backend primitives ---

    @abstractmethod
    def _open(self, config: Mapping[str, Any]) -> None:
        """Prepare the backend (create schema, reset state)."""

    @abstractmethod
    def _close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    def _insert_records(self, records: Sequence[UsageRecord]) -> List[bool]:
        """Insert each record unless its hash is already stored.

        Returns one flag per record, True when it was stored. Check and
        insert must be a single atomic step per record.
        """

    @abstractmethod
    def _snapshot(self, flt: Optional[UsageFilter] = None) -> List[UsageRecord]:
        """Consistent copy of stored records in insertion order.

        ``flt`` is a hint; a backend may return a superset of the matches.
        """

    @abstractmethod
    def _delete_expired(self, policy: RetentionPolicy, now: datetime) -> int:
        """Delete records outside every applicable window; return the count.

        Deletion and any index rebuild happen in one critical section.
        """

    @abstractmethod
    def _write_export(self, chunks: Iterable[str], request: ExportRequest) -> int:
        """Consume serialized export chunks; return the size in bytes."""

    @abstractmethod
    def _health(self) -> Tuple[str, str]:
        """Return ``(status, message)``."""

    def _optimize(self) -> None:
        """Backend housekeeping; nothing to do by default."""

    # --- Lifecycle ---

    def initialize(self, config: Optional[Mapping[str, Any]] = None) -> None:
        """Configure and open the backend.

        Recognised keys: ``timezone`` (IANA name or ``"local"``) and
        ``max_reported_errors``; backends read their own keys.

        Raises:
            ConfigurationError: If a recognised key has an invalid value
        """
        config = dict(config or {})
        self._tz = resolve_timezone(config.get("timezone"))

        max_errors = config.get("max_reported_errors", DEFAULT_MAX_REPORTED_ERRORS)
        if isinstance(max_errors, bool) or not isinstance(max_errors, int) or max_errors < 0:
            raise ConfigurationError("max_reported_errors must be an integer >= 0")
        self._max_reported_errors = max_errors

        self._open(config)
        logger.info("Initialized %s usage storage", self.backend_name)

    def health_check(self) -> StorageHealth:
        status, message = self._health()
        return StorageHealth(status=status, message=message, checked_at=format_utc(utc_now()))

    def close(self) -> None:
        self._close()
        logger.info("Closed %s usage storage", self.backend_name)

    # --- Ingestion ---

    def store_usage_records(self, client_id: str, records: Sequence[Any]) -> IngestionResult:
        """Validate, fingerprint and store one client's records.

        Invalid records are counted and listed by index; duplicates are
        counted and dropped. Neither aborts the rest of the batch.

        Args:
            client_id: Owning client; overrides any client-supplied value
            records: ``UsageRecord`` instances or decoded JSON objects
        """
        started = time.perf_counter()
        result = IngestionResult(records_processed=len(records))

        accepted: List[UsageRecord] = []
        for index, raw in enumerate(records):
            try:
                record = raw if isinstance(raw, UsageRecord) else UsageRecord.from_dict(raw)
                reason = validation_error(record)
            except InvalidRecordError as e:
                reason = str(e)

            if reason is not None:
                result.records_invalid += 1
                self._report_error(result, f"Invalid record at index {index}: {reason}")
                logger.debug("Rejected record %d from %s: %s", index, client_id, reason)
                continue

            accepted.append(record.stamped(
                client_id=client_id,
                ingested_at=format_utc(utc_now()),
                record_hash=compute_record_hash(record),
            ))

        if accepted:
            for inserted in self._insert_records(accepted):
                if inserted:
                    result.records_stored += 1
                else:
                    result.records_duplicate += 1

        omitted = result.records_invalid - len(result.errors)
        if omitted > 0:
            result.errors.append(f"{omitted} more invalid records not listed")

        result.processing_time_ms = _elapsed_ms(started)
        logger.info(
            "Ingested %d records for %s: %d stored, %d duplicate, %d invalid",
            result.records_processed, client_id, result.records_stored,
            result.records_duplicate, result.records_invalid,
        )
        return result

    def _report_error(self, result: IngestionResult, message: str) -> None:
        if len(result.errors) < self._max_reported_errors:
            result.errors.append(message)

    def store_usage_records_batch(
        self,
        batches: Sequence[Union[ClientRecordBatch, Mapping[str, Any]]],
    ) -> BatchIngestionResult:
        """Ingest records for several clients.

        Each client's batch is independent: a backend failure while
        storing one client's records is reported in that client's result
        and the remaining clients are still ingested.
        """
        started = time.perf_counter()
        batch_result = BatchIngestionResult()

        for batch in batches:
            if isinstance(batch, Mapping):
                batch = ClientRecordBatch(client_id=batch["client_id"], records=batch["records"])

            try:
                result = self.store_usage_records(batch.client_id, batch.records)
            except StorageBackendError as e:
                logger.error("Ingestion failed for client %s: %s", batch.client_id, e)
                result = IngestionResult(
                    records_processed=len(batch.records),
                    errors=[f"Ingestion failed: {e}"],
                )

            previous = batch_result.client_results.get(batch.client_id)
            batch_result.client_results[batch.client_id] = (
                _merge_results(previous, result) if previous else result
            )
            batch_result.total_records_processed += result.records_processed
            batch_result.total_records_stored += result.records_stored
            batch_result.total_records_duplicate += result.records_duplicate
            batch_result.total_records_invalid += result.records_invalid

        batch_result.processing_time_ms = _elapsed_ms(started)
        return batch_result

    # --- Query and analytics ---

    def query_usage(self, query: UsageQuery) -> UsageQueryResult:
        return run_query(self._snapshot(query.to_filter()), query)

    def get_usage_trend(self, request: TrendRequest) -> TrendData:
        return compute_trend(self._snapshot(request.to_filter()), request, self._tz)

    def get_top_usage(self, request: TopUsageRequest) -> TopUsageResult:
        return compute_top_usage(self._snapshot(request.to_filter()), request)

    def get_usage_summary(self, request: UsageSummaryRequest) -> UsageSummary:
        return compute_usage_summary(self._snapshot(request.to_filter()), request, self._tz)

    def get_cost_breakdown(self, request: CostBreakdownRequest) -> CostBreakdown:
        return compute_cost_breakdown(self._snapshot(request.to_filter()), request)

    def calculate_projected_cost(self, request: ProjectionRequest) -> CostProjection:
        return project_cost(self._snapshot(request.to_filter()), request, self._tz)

    # --- Management ---

    def get_retention_info(self) -> RetentionInfo:
        return build_retention_info(self._snapshot(), utc_now())

    def apply_retention_policy(
        self,
        policy: Union[RetentionPolicy, Mapping[str, Any]],
        now: Optional[datetime] = None,
    ) -> RetentionResult:
        """Delete records older than every window that applies to them.

        The policy is validated before anything is deleted.

        Raises:
            ConfigurationError: If the policy is malformed
        """
        started = time.perf_counter()
        if not isinstance(policy, RetentionPolicy):
            policy = RetentionPolicy.from_dict(policy)

        deleted = self._delete_expired(policy, now or utc_now())
        logger.info(
            "Retention sweep on %s storage deleted %d records (default %s days)",
            self.backend_name, deleted, policy.default_retention_days,
        )
        return RetentionResult(
            records_deleted=deleted,
            storage_freed_gb=estimated_size_gb(deleted),
            processing_time_ms=_elapsed_ms(started),
        )

    def export_usage_data(self, request: ExportRequest) -> ExportResult:
        """Serialize matching records as JSON lines or CSV rows."""
        started = time.perf_counter()
        flt = request.to_filter()
        records = filter_records(self._snapshot(flt), flt)

        size = self._write_export(serialize_records(records, request.format), request)
        logger.info(
            "Exported %d records (%s, %s) to %s",
            len(records), request.format, request.compression, request.destination,
        )
        return ExportResult(
            records_exported=len(records),
            file_size_bytes=size,
            file_path=request.destination,
            processing_time_ms=_elapsed_ms(started),
        )

    def get_storage_stats(self) -> StorageStats:
        records = self._snapshot()
        midnight = self._local_midnight(utc_now())
        records_today = sum(
            1 for record in records
            if record.ingested_at and parse_timestamp(record.ingested_at) >= midnight
        )
        return StorageStats(
            total_records=len(records),
            total_size_gb=estimated_size_gb(len(records)),
            records_today=records_today,
        )

    def optimize_storage(self) -> OptimizationResult:
        started = time.perf_counter()
        self._optimize()
        return OptimizationResult(status="ok", processing_time_ms=_elapsed_ms(started))

    def _local_midnight(self, now: datetime) -> datetime:
        local = to_local(now, self._tz).replace(tzinfo=None)
        return localize(local.replace(hour=0, minute=0, second=0, microsecond=0), self._tz)


def _merge_results(first: IngestionResult, second: IngestionResult) -> IngestionResult:
    return IngestionResult(
        records_processed=first.records_processed + second.records_processed,
        records_stored=first.records_stored + second.records_stored,
        records_duplicate=first.records_duplicate + second.records_duplicate,
        records_invalid=first.records_invalid + second.records_invalid,
        processing_time_ms=first.processing_time_ms + second.processing_time_ms,
        errors=first.errors + second.errors,
    )


def serialize_records(records: Iterable[UsageRecord], fmt: str) -> Iterator[str]:
    """Yield newline-terminated JSON lines or CSV rows (CSV with a header)."""
    if fmt == "jsonl":
        for record in records:
            yield json.dumps(record.to_dict(), sort_keys=True) + "\n"
        return

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS, lineterminator="\n")
    writer.writeheader()
    yield _drain(buffer)
    for record in records:
        row: Dict[str, Any] = record.to_dict()
        if "metadata" in row:
            row["metadata"] = json.dumps(row["metadata"], sort_keys=True)
        writer.writerow(row)
        yield _drain(buffer)


def _drain(buffer: io.StringIO) -> str:
    text = buffer.getvalue()
    buffer.seek(0)
    buffer.truncate(0)
    return text
