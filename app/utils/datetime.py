"""
Datetime helpers for job timestamps and backup retention.

Everything stored by the pipeline is UTC. SQLite hands timestamps back
naive, so comparisons go through ensure_utc first.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """
    Normalize a datetime to aware UTC.

    Naive values are taken to be UTC already.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def expires_after(days: int, start: Optional[datetime] = None) -> datetime:
    """Expiry timestamp ``days`` after ``start`` (defaults to now)."""
    return ensure_utc(start or utc_now()) + timedelta(days=days)


def is_expired(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True when ``expires_at`` is set and lies in the past. No expiry never expires."""
    if expires_at is None:
        return False
    return ensure_utc(expires_at) < ensure_utc(now or utc_now())


def to_iso(dt: datetime) -> str:
    """ISO 8601 text for a datetime stored in a JSON column."""
    return ensure_utc(dt).isoformat()


def from_iso(value: str) -> Optional[datetime]:
    """
    Parse text written by to_iso.

    A trailing ``Z`` is accepted. Returns None for anything unparseable.
    """
    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        return ensure_utc(datetime.fromisoformat(value))
    except (ValueError, TypeError, AttributeError):
        return None
