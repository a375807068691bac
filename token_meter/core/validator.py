"""
Usage record validation.

Only the identity of an event is checked: when it happened and which
service and model served it. Token counts and cost may be absent or zero.
"""

from typing import Optional

from ..storage.models import UsageRecord
from .timeutil import parse_timestamp

ZERO_TIMESTAMP = "0001-01-01T00:00:00Z"


def validation_error(record: UsageRecord) -> Optional[str]:
    """Return why a record is invalid, or ``None`` if it is valid."""
    if not record.timestamp or record.timestamp == ZERO_TIMESTAMP:
        return "timestamp is required"
    try:
        instant = parse_timestamp(record.timestamp)
    except ValueError:
        return f"timestamp {record.timestamp!r} is not ISO-8601"
    # Year 1 covers the zero-value sentinel in any offset notation, and
    # the bounds keep local-time bucketing representable in every zone.
    if instant.year <= 1 or instant.year >= 9999:
        return "timestamp is required"
    if not record.service or not record.service.strip():
        return "service is required"
    if not record.model or not record.model.strip():
        return "model is required"
    return None


def is_valid_record(record: UsageRecord) -> bool:
    """Check that a record has a real timestamp, a service and a model."""
    return validation_error(record) is None
