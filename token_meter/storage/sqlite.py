"""
SQLite storage backend.

Durable implementation of the storage contract. The record hash is the
primary key, so ``INSERT OR IGNORE`` is the atomic insert-if-absent that
deduplication needs. Writes run in ``BEGIN IMMEDIATE`` transactions.
"""

import gzip
import json
import logging
import os
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..core.query import record_time
from ..core.retention import partition_expired
from ..core.timeutil import parse_timestamp
from ..errors import StorageBackendError
from .base import UsageStorage
from .db import DEFAULT_DB_PATH, get_connection
from .models import ExportRequest, RetentionPolicy, UsageFilter, UsageRecord

logger = logging.getLogger(__name__)

_COLUMNS = (
    "record_hash", "timestamp", "service", "model", "input_tokens",
    "output_tokens", "total_tokens", "cost_usd", "cost_model", "session_id",
    "request_id", "user_id", "application", "environment", "metadata",
    "client_id", "ingested_at",
)

_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM usage_record"

# Slack around pushed-down time bounds; exact bounds are applied in Python.
_RANGE_SLACK = timedelta(seconds=1)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage_record table if it doesn't exist.

    ``event_time`` holds the event instant as UTC epoch seconds so time
    ranges can be pushed down to an index.
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_record (
                record_hash TEXT PRIMARY KEY,
                event_time REAL NOT NULL,
                timestamp TEXT NOT NULL,
                service TEXT NOT NULL,
                model TEXT NOT NULL,
                input_tokens INTEGER,
                output_tokens INTEGER,
                total_tokens INTEGER,
                cost_usd REAL,
                cost_model TEXT,
                session_id TEXT,
                request_id TEXT,
                user_id TEXT,
                application TEXT,
                environment TEXT,
                metadata TEXT,
                client_id TEXT NOT NULL,
                ingested_at TEXT NOT NULL
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_usage_record_event_time ON usage_record (event_time)"
        )
    finally:
        conn.close()


def _row_to_record(row: Sequence[Any]) -> UsageRecord:
    values = dict(zip(_COLUMNS, row))
    if values["metadata"] is not None:
        values["metadata"] = json.loads(values["metadata"])
    return UsageRecord(**values)


def _record_to_row(record: UsageRecord) -> Tuple[Any, ...]:
    metadata = json.dumps(dict(record.metadata), sort_keys=True) if record.metadata is not None else None
    return (
        record.record_hash,
        record_time(record).timestamp(),
        record.timestamp,
        record.service,
        record.model,
        record.input_tokens,
        record.output_tokens,
        record.total_tokens,
        record.cost_usd,
        record.cost_model,
        record.session_id,
        record.request_id,
        record.user_id,
        record.application,
        record.environment,
        metadata,
        record.client_id,
        record.ingested_at,
    )


class SqliteUsageStorage(UsageStorage):
    """Usage storage persisted in a SQLite database file."""

    backend_name = "sqlite"

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        super().__init__()
        self.db_path = db_path

    def _open(self, config: Mapping[str, Any]) -> None:
        self.db_path = str(config.get("path", self.db_path))
        initialize_schema(self.db_path)

    def _close(self) -> None:
        # Connections are per operation; nothing is held open.
        pass

    def _insert_records(self, records: Sequence[UsageRecord]) -> List[bool]:
        placeholders = ", ".join("?" for _ in range(len(_COLUMNS) + 1))
        statement = (
            f"INSERT OR IGNORE INTO usage_record (record_hash, event_time, {', '.join(_COLUMNS[1:])}) "
            f"VALUES ({placeholders})"
        )
        try:
            rows = [_record_to_row(record) for record in records]
        except (TypeError, ValueError) as e:
            raise StorageBackendError(f"Failed to serialize usage records: {e}") from e

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            inserted = [conn.execute(statement, row).rowcount == 1 for row in rows]
            conn.execute("COMMIT")
            return inserted
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StorageBackendError(f"Failed to store usage records: {e}") from e
        finally:
            conn.close()

    def _snapshot(self, flt: Optional[UsageFilter] = None) -> List[UsageRecord]:
        query = _SELECT
        params: List[Any] = []
        conditions = []
        if flt is not None and flt.start_time:
            conditions.append("event_time >= ?")
            params.append((parse_timestamp(flt.start_time) - _RANGE_SLACK).timestamp())
        if flt is not None and flt.end_time:
            conditions.append("event_time < ?")
            params.append((parse_timestamp(flt.end_time) + _RANGE_SLACK).timestamp())
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY rowid"

        conn = get_connection(self.db_path)
        try:
            return [_row_to_record(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def _delete_expired(self, policy: RetentionPolicy, now: datetime) -> int:
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            records = [_row_to_record(row) for row in conn.execute(_SELECT).fetchall()]
            _, expired = partition_expired(records, policy, now)
            conn.executemany(
                "DELETE FROM usage_record WHERE record_hash = ?",
                [(record.record_hash,) for record in expired],
            )
            conn.execute("COMMIT")
            return len(expired)
        except sqlite3.Error:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _write_export(self, chunks: Iterable[str], request: ExportRequest) -> int:
        destination = Path(request.destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        if request.compression == "gzip":
            handle = gzip.open(destination, "wt", encoding="utf-8", newline="")
        else:
            handle = open(destination, "w", encoding="utf-8", newline="")
        with handle:
            for chunk in chunks:
                handle.write(chunk)
        return os.path.getsize(destination)

    def _health(self) -> Tuple[str, str]:
        try:
            conn = get_connection(self.db_path)
            try:
                count = conn.execute("SELECT COUNT(*) FROM usage_record").fetchone()[0]
            finally:
                conn.close()
        except sqlite3.Error as e:
            return "unhealthy", f"SQLite storage at {self.db_path}: {e}"
        return "healthy", f"SQLite storage at {self.db_path}, {count} records"

    def _optimize(self) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("VACUUM")
        finally:
            conn.close()
        logger.info("Vacuumed SQLite storage at %s", self.db_path)
