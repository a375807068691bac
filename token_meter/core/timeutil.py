"""
Timestamp parsing and timezone handling.

Usage events arrive with ISO-8601 timestamps from many clients (Go's
RFC 3339 with nanoseconds, JavaScript's millisecond ``Z`` form, naive
strings). Everything is normalised to aware UTC datetimes internally.
"""

import re
from datetime import datetime, timezone, tzinfo
from functools import lru_cache
from typing import Optional

from ..errors import ConfigurationError

_ISO_PATTERN = re.compile(
    r"^(\d{4}-\d{2}-\d{2})"
    r"(?:[Tt ](\d{2}:\d{2}(?::\d{2})?)(?:\.(\d+))?)?"
    r"\s*(Z|z|[+-]\d{2}:?\d{2})?$"
)


@lru_cache(maxsize=65536)
def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 string into an aware UTC datetime.

    Fractions longer than microseconds are truncated. Strings without an
    offset are taken to be UTC.

    Raises:
        ValueError: If the string is not an ISO-8601 timestamp
    """
    match = _ISO_PATTERN.match(value.strip())
    if not match:
        raise ValueError(f"Invalid ISO-8601 timestamp: {value!r}")

    date_part, time_part, fraction, offset = match.groups()
    text = f"{date_part}T{time_part or '00:00:00'}"
    if fraction:
        text += "." + fraction[:6].ljust(6, "0")

    if offset is None or offset in ("Z", "z"):
        text += "+00:00"
    elif ":" in offset:
        text += offset
    else:
        text += f"{offset[:3]}:{offset[3:]}"

    return datetime.fromisoformat(text).astimezone(timezone.utc)


def format_utc(instant: datetime) -> str:
    """Render an instant as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    utc = instant.astimezone(timezone.utc)
    return (
        f"{utc.year:04d}-{utc.month:02d}-{utc.day:02d}T"
        f"{utc.hour:02d}:{utc.minute:02d}:{utc.second:02d}.{utc.microsecond // 1000:03d}Z"
    )


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def resolve_timezone(name: Optional[str]) -> Optional[tzinfo]:
    """Resolve a configured timezone name.

    ``None`` and ``"local"`` return ``None``, which the bucketing code
    treats as the host's local time.

    Raises:
        ConfigurationError: If the name is not a known IANA zone
    """
    if name is None or name.lower() == "local":
        return None
    if name.upper() == "UTC":
        return timezone.utc

    from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigurationError(f"Unknown timezone: {name}")


def to_local(instant: datetime, tz: Optional[tzinfo]) -> datetime:
    """Convert an instant to the configured zone (host local when ``tz`` is None)."""
    return instant.astimezone(tz)


def localize(naive: datetime, tz: Optional[tzinfo]) -> datetime:
    """Attach the configured zone to a naive wall-clock time."""
    if tz is None:
        return naive.astimezone()
    return naive.replace(tzinfo=tz)
