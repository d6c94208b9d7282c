from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


UTC = timezone.utc
_TICK = timedelta(microseconds=1)


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back, so naive values are read as UTC."""

    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def strictly_after(previous: Optional[datetime], candidate: Optional[datetime] = None) -> datetime:
    """Return ``candidate`` (default: now) bumped past ``previous`` if needed."""

    value = ensure_utc(candidate) or utc_now()
    if previous is not None and value <= ensure_utc(previous):
        return ensure_utc(previous) + _TICK
    return value


def to_rfc3339_utc(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to RFC3339 in UTC with millisecond precision."""

    if dt is None:
        return None
    value = ensure_utc(dt)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


__all__ = [
    "UTC",
    "ensure_utc",
    "strictly_after",
    "to_rfc3339_utc",
    "utc_now",
]
