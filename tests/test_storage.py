"""
Unit tests for storage layer.

Tests ingestion, deduplication, lifecycle and management operations
against both the in-memory and the SQLite backend.
"""

import dataclasses
import gzip
import json
import os
import tempfile
import threading
from datetime import timedelta
from unittest.mock import patch

import pytest

from token_meter.core.timeutil import format_utc, utc_now
from token_meter.errors import ConfigurationError, StorageBackendError
from token_meter.storage.base import CSV_COLUMNS, serialize_records
from token_meter.storage.db import get_connection
from token_meter.storage.factory import create_storage
from token_meter.storage.models import (
    ClientRecordBatch,
    ExportRequest,
    UsageQuery,
)
from token_meter.storage.sqlite import SqliteUsageStorage, initialize_schema


RECENT = format_utc(utc_now() - timedelta(hours=1))


def _raw(**overrides) -> dict:
    values = {
        "timestamp": RECENT,
        "service": "openai",
        "model": "gpt-4",
        "input_tokens": 100,
        "output_tokens": 50,
        "total_tokens": 150,
        "cost_usd": 0.1,
    }
    values.update(overrides)
    return values


def _all_records(storage):
    return storage.query_usage(UsageQuery(limit=1000)).records


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    """Initialized storage for each backend, timezone pinned to UTC."""
    with tempfile.TemporaryDirectory() as temp_dir:
        store = create_storage({
            "backend": request.param,
            "path": os.path.join(temp_dir, "usage.db"),
            "timezone": "UTC",
        })
        yield store
        store.close()


class TestIngestion:
    """Test validation, stamping and deduplication on ingest."""

    def test_store_single_record(self, storage):
        """A valid record is stored and stamped."""
        result = storage.store_usage_records("client-a", [_raw(request_id="req-1")])

        assert result.records_processed == 1
        assert result.records_stored == 1
        assert result.records_duplicate == 0
        assert result.records_invalid == 0
        assert result.errors == []

        records = _all_records(storage)
        assert len(records) == 1
        assert records[0].client_id == "client-a"
        assert records[0].request_id == "req-1"
        assert records[0].ingested_at.endswith("Z")
        assert len(records[0].record_hash) == 64

    def test_duplicate_within_call(self, storage):
        """The same record twice yields one stored and one duplicate."""
        raw = _raw()
        result = storage.store_usage_records("client-a", [raw, dict(raw)])

        assert result.records_stored == 1
        assert result.records_duplicate == 1
        assert len(_all_records(storage)) == 1

    def test_duplicate_across_calls(self, storage):
        """Re-ingesting stored content is counted and discarded."""
        raw = _raw()
        storage.store_usage_records("client-a", [raw])
        second = storage.store_usage_records("client-a", [raw])

        assert second.records_stored == 0
        assert second.records_duplicate == 1
        assert len(_all_records(storage)) == 1

    def test_duplicate_does_not_overwrite(self, storage):
        """The first stored copy wins, even for another client."""
        raw = _raw()
        storage.store_usage_records("client-a", [raw])
        result = storage.store_usage_records("client-b", [dict(raw, metadata={"retry": True})])

        assert result.records_duplicate == 1
        records = _all_records(storage)
        assert len(records) == 1
        assert records[0].client_id == "client-a"
        assert records[0].metadata is None

    def test_client_supplied_identity_ignored(self, storage):
        """client_id always comes from the caller, never the payload."""
        storage.store_usage_records("client-a", [_raw(client_id="spoofed")])
        assert _all_records(storage)[0].client_id == "client-a"

    def test_invalid_records_counted_and_indexed(self, storage):
        """Invalid records never abort the batch and are reported by index."""
        records = [
            _raw(timestamp=""),
            _raw(request_id="ok"),
            _raw(service="  "),
            _raw(model=""),
            "not an object",
        ]
        result = storage.store_usage_records("client-a", records)

        assert result.records_processed == 5
        assert result.records_stored == 1
        assert result.records_invalid == 4
        assert result.errors[0] == "Invalid record at index 0: timestamp is required"
        assert result.errors[1] == "Invalid record at index 2: service is required"
        assert result.errors[2] == "Invalid record at index 3: model is required"
        assert result.errors[3].startswith("Invalid record at index 4:")
        assert len(_all_records(storage)) == 1

    def test_empty_batch(self, storage):
        """An empty batch stores nothing."""
        result = storage.store_usage_records("client-a", [])
        assert result.records_processed == 0
        assert result.records_stored == 0
        assert _all_records(storage) == []

    def test_stored_records_are_read_only(self, storage):
        """Callers receive records they cannot modify."""
        storage.store_usage_records("client-a", [_raw(metadata={"team": "search"})])
        record = _all_records(storage)[0]

        with pytest.raises(dataclasses.FrozenInstanceError):
            record.cost_usd = 0.0
        with pytest.raises(TypeError):
            record.metadata["team"] = "ads"
        assert _all_records(storage)[0].metadata["team"] == "search"


class TestErrorReporting:
    """Test the bounded ingestion error list."""

    def test_error_list_bounded(self):
        """Errors beyond the limit are summarized in one line."""
        storage = create_storage({"backend": "memory", "max_reported_errors": 2})
        result = storage.store_usage_records("client-a", [_raw(service="")] * 5)

        assert result.records_invalid == 5
        assert len(result.errors) == 3
        assert result.errors[-1] == "3 more invalid records not listed"

    def test_invalid_error_limit_rejected(self):
        """A negative error limit is a configuration error."""
        with pytest.raises(ConfigurationError, match="max_reported_errors"):
            create_storage({"backend": "memory", "max_reported_errors": -1})


class TestBatchIngestion:
    """Test multi-client batch ingestion."""

    def test_per_client_and_total_counters(self, storage):
        """Each client gets its own result and totals add up."""
        result = storage.store_usage_records_batch([
            ClientRecordBatch(client_id="client-a", records=[_raw(request_id="a1"), _raw(service="")]),
            {"client_id": "client-b", "records": [_raw(request_id="b1"), _raw(request_id="b2")]},
        ])

        assert result.total_records_processed == 4
        assert result.total_records_stored == 3
        assert result.total_records_invalid == 1
        assert result.client_results["client-a"].records_stored == 1
        assert result.client_results["client-a"].records_invalid == 1
        assert result.client_results["client-b"].records_stored == 2

    def test_repeated_client_results_merged(self, storage):
        """Two batches for one client are reported together."""
        result = storage.store_usage_records_batch([
            ClientRecordBatch(client_id="client-a", records=[_raw(request_id="a1")]),
            ClientRecordBatch(client_id="client-a", records=[_raw(request_id="a1"), _raw(request_id="a2")]),
        ])

        merged = result.client_results["client-a"]
        assert merged.records_processed == 3
        assert merged.records_stored == 2
        assert merged.records_duplicate == 1

    def test_backend_failure_isolated_to_client(self):
        """A backend failure for one client does not affect the next."""
        storage = create_storage({"backend": "memory"})
        original_insert = storage._insert_records
        calls = []

        def flaky_insert(records):
            calls.append(records)
            if len(calls) == 1:
                raise StorageBackendError("disk full")
            return original_insert(records)

        with patch.object(storage, "_insert_records", side_effect=flaky_insert):
            result = storage.store_usage_records_batch([
                ClientRecordBatch(client_id="client-a", records=[_raw(request_id="a1")]),
                ClientRecordBatch(client_id="client-b", records=[_raw(request_id="b1")]),
            ])

        assert result.client_results["client-a"].records_stored == 0
        assert result.client_results["client-a"].errors == ["Ingestion failed: disk full"]
        assert result.client_results["client-b"].records_stored == 1
        assert result.total_records_stored == 1


class TestLifecycle:
    """Test initialize, health and close."""

    def test_health_check(self, storage):
        """A fresh store reports healthy."""
        health = storage.health_check()
        assert health.status == "healthy"
        assert health.checked_at.endswith("Z")

    def test_unknown_backend_rejected(self):
        """Only supported backends can be created."""
        with pytest.raises(ConfigurationError, match="backend must be one of"):
            create_storage({"backend": "redis"})

    def test_unknown_timezone_rejected(self):
        """Timezone names must resolve."""
        with pytest.raises(ConfigurationError, match="Unknown timezone"):
            create_storage({"backend": "memory", "timezone": "Mars/Olympus_Mons"})

    def test_default_backend_is_memory(self):
        """Without a backend key the in-memory store is used."""
        assert create_storage().backend_name == "memory"

    def test_memory_close_clears_records(self):
        """Closing the in-memory store discards its contents."""
        storage = create_storage({"backend": "memory"})
        storage.store_usage_records("client-a", [_raw()])
        storage.close()
        assert storage.get_storage_stats().total_records == 0


class TestManagement:
    """Test stats, optimize and export."""

    def test_storage_stats(self, storage):
        """Stats count all records and those ingested today."""
        storage.store_usage_records("client-a", [_raw(request_id="1"), _raw(request_id="2")])
        stats = storage.get_storage_stats()

        assert stats.total_records == 2
        assert stats.records_today == 2
        assert stats.total_size_gb == 0.0

    def test_optimize(self, storage):
        """Optimization reports ok."""
        result = storage.optimize_storage()
        assert result.status == "ok"
        assert result.processing_time_ms >= 0

    def test_export_counts_filtered_records(self, storage):
        """Only records matching the export filter are exported."""
        storage.store_usage_records("client-a", [_raw(request_id="1"), _raw(request_id="2")])
        storage.store_usage_records("client-b", [_raw(request_id="3")])

        with tempfile.TemporaryDirectory() as temp_dir:
            result = storage.export_usage_data(ExportRequest(
                destination=os.path.join(temp_dir, "out.jsonl"),
                client_ids=["client-a"],
            ))

        assert result.records_exported == 2
        assert result.file_size_bytes > 0

    def test_memory_export_reports_size_only(self):
        """The in-memory store reports the size without writing."""
        storage = create_storage({"backend": "memory"})
        storage.store_usage_records("client-a", [_raw()])
        records = _all_records(storage)
        expected = len("".join(serialize_records(records, "jsonl")).encode("utf-8"))

        with tempfile.TemporaryDirectory() as temp_dir:
            destination = os.path.join(temp_dir, "out.jsonl")
            result = storage.export_usage_data(ExportRequest(destination=destination))
            assert not os.path.exists(destination)

        assert result.file_size_bytes == expected
        assert result.file_path == destination

    def test_unsupported_export_options_rejected(self):
        """Export format and compression are closed vocabularies."""
        with pytest.raises(ValueError, match="format"):
            ExportRequest(destination="out.xml", format="xml")
        with pytest.raises(ValueError, match="compression"):
            ExportRequest(destination="out.jsonl", compression="zstd")


class TestSqliteBackend:
    """Test behaviour specific to the durable SQLite backend."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "usage.db")

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _storage(self):
        return create_storage({"backend": "sqlite", "path": self.db_path, "timezone": "UTC"})

    def test_schema_creation(self):
        """Verify table is created with the hash as primary key."""
        initialize_schema(self.db_path)
        conn = get_connection(self.db_path)
        try:
            columns = conn.execute("PRAGMA table_info(usage_record)").fetchall()
        finally:
            conn.close()

        by_name = {col[1]: col for col in columns}
        assert "record_hash" in by_name
        assert by_name["record_hash"][5] == 1  # pk flag
        assert "event_time" in by_name
        assert "metadata" in by_name

    def test_persistence_across_instances(self):
        """Records survive closing and reopening the store."""
        raw = _raw(metadata={"team": "search"})
        first = self._storage()
        first.store_usage_records("client-a", [raw])
        first.close()

        second = self._storage()
        records = _all_records(second)
        assert len(records) == 1
        assert records[0].metadata["team"] == "search"

        result = second.store_usage_records("client-a", [dict(raw)])
        assert result.records_stored == 0
        assert result.records_duplicate == 1
        assert len(_all_records(second)) == 1

    def test_insert_failure_wrapped(self):
        """SQLite write errors surface as StorageBackendError."""
        storage = SqliteUsageStorage(db_path=os.path.join(self.temp_dir, "missing", "usage.db"))
        with pytest.raises(StorageBackendError, match="Failed to store usage records"):
            storage.store_usage_records("client-a", [_raw()])

    def test_unserializable_metadata_isolated_to_client(self):
        """Metadata SQLite cannot store fails only its own client's batch."""
        storage = self._storage()
        result = storage.store_usage_records_batch([
            ClientRecordBatch(client_id="client-a", records=[_raw(request_id="a1", metadata={"when": object()})]),
            ClientRecordBatch(client_id="client-b", records=[_raw(request_id="b1")]),
        ])

        failed = result.client_results["client-a"]
        assert failed.records_stored == 0
        assert failed.errors[0].startswith("Ingestion failed: Failed to serialize usage records")
        assert result.client_results["client-b"].records_stored == 1
        assert [record.request_id for record in _all_records(storage)] == ["b1"]

    def test_unserializable_metadata_leaves_batch_unstored(self):
        """A record that cannot be serialized aborts its call before any write."""
        storage = self._storage()
        with pytest.raises(StorageBackendError, match="Failed to serialize"):
            storage.store_usage_records("client-a", [
                _raw(request_id="ok"),
                _raw(request_id="bad", metadata={"payload": {1, 2}}),
            ])
        assert _all_records(storage) == []

    def test_export_writes_jsonl(self):
        """The SQLite backend writes newline-delimited JSON."""
        storage = self._storage()
        storage.store_usage_records("client-a", [_raw(request_id="1"), _raw(request_id="2")])

        destination = os.path.join(self.temp_dir, "export", "usage.jsonl")
        result = storage.export_usage_data(ExportRequest(destination=destination))

        with open(destination, encoding="utf-8") as f:
            lines = [json.loads(line) for line in f]
        assert result.records_exported == 2
        assert result.file_size_bytes == os.path.getsize(destination)
        assert {line["request_id"] for line in lines} == {"1", "2"}
        assert all(line["client_id"] == "client-a" for line in lines)

    def test_export_writes_gzip_csv(self):
        """CSV exports carry a header and can be gzip-compressed."""
        storage = self._storage()
        storage.store_usage_records("client-a", [_raw(metadata={"team": "search"})])

        destination = os.path.join(self.temp_dir, "usage.csv.gz")
        storage.export_usage_data(ExportRequest(
            destination=destination, format="csv", compression="gzip"
        ))

        with gzip.open(destination, "rt", encoding="utf-8") as f:
            lines = f.read().splitlines()
        assert lines[0] == ",".join(CSV_COLUMNS)
        assert len(lines) == 2
        assert "openai" in lines[1]


class TestConcurrentAccess:
    """Test ingestion and retention running from several threads."""

    THREADS = 8

    def _run_threads(self, target, count):
        errors = []

        def guarded(index):
            try:
                target(index)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=guarded, args=(i,)) for i in range(count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert errors == []

    def test_overlapping_ingestion_stores_each_record_once(self, storage):
        """Every fingerprint is stored exactly once across threads."""
        distinct = 25
        # Each thread sends every record, with a few repeated inside its own call.
        records = [_raw(request_id=f"req-{i}") for i in range(distinct)]
        records += records[:5]
        results = []

        self._run_threads(
            lambda index: results.append(storage.store_usage_records(f"client-{index}", records)),
            self.THREADS,
        )

        assert len(results) == self.THREADS
        assert sum(result.records_stored for result in results) == distinct
        assert sum(result.records_duplicate for result in results) == self.THREADS * len(records) - distinct
        assert len(_all_records(storage)) == distinct

    def test_retention_during_ingestion_keeps_store_consistent(self, storage):
        """Sweeps racing with ingestion delete only expired records."""
        old = format_utc(utc_now() - timedelta(days=60))
        storage.store_usage_records("client-old", [_raw(timestamp=old, request_id=f"old-{i}") for i in range(10)])

        fresh = [_raw(request_id=f"new-{i}") for i in range(20)]
        deleted = []

        def work(index):
            if index % 2:
                deleted.append(
                    storage.apply_retention_policy({"default_retention_days": 30}).records_deleted
                )
            else:
                storage.store_usage_records(f"client-{index}", fresh)

        self._run_threads(work, self.THREADS)

        assert sum(deleted) == 10
        remaining = _all_records(storage)
        assert sorted(record.request_id for record in remaining) == sorted(r["request_id"] for r in fresh)

        again = storage.store_usage_records("client-a", fresh + [_raw(timestamp=old, request_id="old-0")])
        assert again.records_duplicate == len(fresh)
        assert again.records_stored == 1
