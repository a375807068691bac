"""
Content fingerprints for deduplication.

Two records with the same identity fields share a fingerprint and the
second one is dropped at ingestion. Store-assigned fields, ``metadata``
and ``cost_model`` never take part.
"""

import hashlib

from ..storage.models import FINGERPRINT_FIELDS, UsageRecord

FIELD_DELIMITER = "|"


def _render(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        # Match the integral rendering clients use for whole amounts.
        return str(int(value))
    return str(value)


def compute_record_hash(record: UsageRecord) -> str:
    """SHA-256 hex digest of the record's identity fields."""
    joined = FIELD_DELIMITER.join(
        _render(getattr(record, name)) for name in FINGERPRINT_FIELDS
    )
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()
