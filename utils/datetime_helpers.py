"""
Datetime helper utilities to ensure consistent timezone handling.

Claim and accumulator bookkeeping columns are timezone-naive UTC
(DateTime(timezone=False)); these helpers keep aware datetimes out of them.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

logger = logging.getLogger(__name__)


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Example:
        >>> aware_dt = datetime.now(timezone.utc)
        >>> naive_dt = ensure_naive_datetime(aware_dt)
        >>> assert naive_dt.tzinfo is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Current UTC time without timezone info"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def naive_utc_seconds_ago(seconds: float) -> datetime:
    """Naive UTC timestamp `seconds` in the past, for staleness cutoffs"""
    return get_naive_utc_now() - timedelta(seconds=seconds)
