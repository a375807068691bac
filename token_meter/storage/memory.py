"""
In-memory storage backend.

Records live in a single insertion-ordered mapping from record hash to
record. The mapping is both the record set and the dedup index, so the
two can never disagree. Contents do not survive the process.
"""

import gzip
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..core.retention import partition_expired
from .base import UsageStorage
from .models import ExportRequest, RetentionPolicy, UsageFilter, UsageRecord


class InMemoryUsageStorage(UsageStorage):
    """Process-local storage guarded by one re-entrant lock."""

    backend_name = "memory"

    def __init__(self):
        super().__init__()
        self._lock = threading.RLock()
        self._records: Dict[str, UsageRecord] = {}

    def _open(self, config: Mapping[str, Any]) -> None:
        with self._lock:
            self._records = {}

    def _close(self) -> None:
        with self._lock:
            self._records = {}

    def _insert_records(self, records: Sequence[UsageRecord]) -> List[bool]:
        inserted = []
        with self._lock:
            for record in records:
                if record.record_hash in self._records:
                    inserted.append(False)
                else:
                    self._records[record.record_hash] = record
                    inserted.append(True)
        return inserted

    def _snapshot(self, flt: Optional[UsageFilter] = None) -> List[UsageRecord]:
        with self._lock:
            return list(self._records.values())

    def _delete_expired(self, policy: RetentionPolicy, now: datetime) -> int:
        with self._lock:
            kept, expired = partition_expired(self._records.values(), policy, now)
            # Rebuild rather than remove in place.
            self._records = {record.record_hash: record for record in kept}
        return len(expired)

    def _write_export(self, chunks: Iterable[str], request: ExportRequest) -> int:
        # Nothing is written; only the size the export would have.
        data = "".join(chunks).encode("utf-8")
        if request.compression == "gzip":
            data = gzip.compress(data)
        return len(data)

    def _health(self) -> Tuple[str, str]:
        with self._lock:
            count = len(self._records)
        return "healthy", f"In-memory storage, {count} records"
