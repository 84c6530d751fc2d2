from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Return aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware_utc(value: datetime) -> datetime:
    """
    Ensure datetime is timezone-aware in UTC.

    - If naive, assume it is UTC and attach tzinfo.
    - If aware, convert to UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert datetime to aware UTC; pass None through."""
    if value is None:
        return None
    return ensure_aware_utc(value)


def coerce_epoch_seconds(value) -> Optional[int]:
    """Epoch seconds from int/float/str; millisecond timestamps are scaled down."""
    if value is None or value == "":
        return None
    try:
        ts = int(float(value))
    except (TypeError, ValueError):
        return None
    if ts > 10_000_000_000:
        ts //= 1000
    return ts


def from_epoch_seconds(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def to_epoch_seconds(value: datetime) -> int:
    return int(ensure_aware_utc(value).timestamp())


def date_window(days_ahead: int, *, today: Optional[date] = None) -> tuple[str, str]:
    """Inclusive YYYY-MM-DD window from today to today + days_ahead."""
    start = today or utcnow().date()
    end = start + timedelta(days=days_ahead)
    return start.isoformat(), end.isoformat()
