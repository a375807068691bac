"""
Retention policy evaluation.

Each record can fall under up to three windows: the default, an override
for its service, and an override for its client. The record is kept
while it is inside the longest of them. An override can extend how long
a record lives but never shortens it below the default.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

from ..storage.models import RetentionInfo, RetentionPolicy, UsageRecord
from .query import record_time
from .rounding import round_half_up

ESTIMATED_BYTES_PER_RECORD = 500
BYTES_PER_GB = 1024 * 1024 * 1024
AGE_BRACKETS_DAYS = (30, 90, 180, 365)
_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


def estimated_size_gb(record_count: int) -> float:
    """Storage estimate for ``record_count`` records, in GB to 3 places."""
    return round_half_up(record_count * ESTIMATED_BYTES_PER_RECORD / BYTES_PER_GB, 3)


def retention_days(record: UsageRecord, policy: RetentionPolicy) -> float:
    """Longest retention window that applies to the record."""
    windows = [policy.default_retention_days]
    if record.service in policy.service_retention:
        windows.append(policy.service_retention[record.service])
    client_id = record.client_id or ""
    if client_id in policy.client_retention:
        windows.append(policy.client_retention[client_id])
    return max(windows)


def retention_cutoff(now: datetime, days: float) -> Optional[datetime]:
    """Oldest instant still inside a window of ``days``.

    Returns None when the window reaches back past the earliest
    representable instant, in which case every record is kept.
    """
    if days >= (now - _EARLIEST).days:
        return None
    return now - timedelta(days=days)


def is_retained(record: UsageRecord, policy: RetentionPolicy, now: datetime) -> bool:
    cutoff = retention_cutoff(now, retention_days(record, policy))
    return cutoff is None or record_time(record) >= cutoff


def partition_expired(
    records: Iterable[UsageRecord],
    policy: RetentionPolicy,
    now: datetime,
) -> Tuple[List[UsageRecord], List[UsageRecord]]:
    """Split records into ``(kept, expired)``, preserving order."""
    kept, expired = [], []
    for record in records:
        (kept if is_retained(record, policy, now) else expired).append(record)
    return kept, expired


def build_retention_info(records: Sequence[UsageRecord], now: datetime) -> RetentionInfo:
    """Record age profile: oldest/newest event and counts inside each bracket."""
    if not records:
        return RetentionInfo(
            total_records=0,
            oldest_record=None,
            newest_record=None,
            records_by_age={f"{days}_days": 0 for days in AGE_BRACKETS_DAYS},
            estimated_size_gb=0.0,
        )

    instants = [(record_time(record), record) for record in records]
    oldest = min(instants, key=lambda item: item[0])[1]
    newest = max(instants, key=lambda item: item[0])[1]

    records_by_age = {}
    for days in AGE_BRACKETS_DAYS:
        cutoff = now - timedelta(days=days)
        records_by_age[f"{days}_days"] = sum(1 for instant, _ in instants if instant >= cutoff)

    return RetentionInfo(
        total_records=len(records),
        oldest_record=oldest.timestamp,
        newest_record=newest.timestamp,
        records_by_age=records_by_age,
        estimated_size_gb=estimated_size_gb(len(records)),
    )
