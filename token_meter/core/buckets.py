"""
Calendar-aware time bucketing.

Buckets are aligned to wall-clock boundaries in the configured timezone:
the hour, local midnight, the most recent Monday, or the first of the
month.
"""

from datetime import datetime, timedelta, tzinfo
from typing import Optional

from .metrics import Interval
from .timeutil import localize, to_local


def bucket_start(instant: datetime, interval: Optional[Interval], tz: Optional[tzinfo]) -> datetime:
    """Start of the bucket containing ``instant``.

    An unsupported interval (``None``) leaves the instant untruncated so
    every distinct timestamp becomes its own bucket.
    """
    if interval is None:
        return instant

    local = to_local(instant, tz).replace(tzinfo=None)
    if interval is Interval.HOUR:
        naive = local.replace(minute=0, second=0, microsecond=0)
    elif interval is Interval.DAY:
        naive = local.replace(hour=0, minute=0, second=0, microsecond=0)
    elif interval is Interval.WEEK:
        midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
        naive = midnight - timedelta(days=midnight.weekday())
    elif interval is Interval.MONTH:
        naive = local.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    else:
        raise AssertionError(f"unhandled interval {interval}")

    return localize(naive, tz)


def day_key(instant: datetime, tz: Optional[tzinfo]) -> str:
    """Calendar date of ``instant`` in the configured zone, as ``YYYY-MM-DD``."""
    local = to_local(instant, tz)
    return f"{local.year:04d}-{local.month:02d}-{local.day:02d}"
