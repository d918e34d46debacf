"""
Server clock used by every time-gated decision (cooldowns, code expiry, sweeps).
Tests install a fixed clock with set_clock().
"""
from datetime import datetime, timezone

_now_fn = None


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    if _now_fn is not None:
        return _now_fn()
    return datetime.now(timezone.utc)


def set_clock(fn):
    """Replace the clock source. Pass None to restore the system clock."""
    global _now_fn
    _now_fn = fn


def as_utc(value):
    """Coerce stored timestamps (datetime, Firestore timestamp, ISO string) to aware UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if hasattr(value, 'timestamp'):
        return datetime.fromtimestamp(value.timestamp(), tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def isoformat_or_none(value):
    dt = as_utc(value)
    return dt.isoformat() if dt else None
