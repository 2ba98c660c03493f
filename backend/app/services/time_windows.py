from __future__ import annotations
from datetime import datetime, timedelta, timezone as dt_tz


def utcnow() -> datetime:
    return datetime.now(dt_tz.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """
    Normalize a stored timestamp to an aware UTC datetime.
    SQLite hands back naive values (always written as UTC); Postgres returns aware ones.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=dt_tz.utc)
    return dt.astimezone(dt_tz.utc)


def hours_since(then: datetime, now: datetime | None = None) -> float:
    now = now or utcnow()
    return (now - as_utc(then)).total_seconds() / 3600.0


def rolling_window_start(hours: int, now: datetime | None = None) -> datetime:
    return (now or utcnow()) - timedelta(hours=hours)


def linear_backoff(attempt_number: int, base_seconds: int, now: datetime | None = None) -> datetime:
    """next_retry_at = now + attempt_number * base"""
    return (now or utcnow()) + timedelta(seconds=max(1, attempt_number) * base_seconds)
