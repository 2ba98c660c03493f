from __future__ import annotations
from datetime import datetime, timedelta, timezone
from app.services.time_windows import utcnow, as_utc, hours_since, rolling_window_start, linear_backoff
import pytest


NOW = datetime(2026, 3, 8, 12, 0, tzinfo=timezone.utc)


def test_utcnow_is_aware_utc():
    now = utcnow()
    assert now.tzinfo is not None
    assert now.utcoffset() == timedelta(0)


def test_as_utc_treats_naive_as_utc():
    """SQLite hands back naive timestamps that were written as UTC"""
    naive = datetime(2026, 3, 8, 12, 0)
    assert as_utc(naive) == NOW
    assert as_utc(None) is None


def test_as_utc_converts_offsets():
    plus_two = datetime(2026, 3, 8, 14, 0, tzinfo=timezone(timedelta(hours=2)))
    out = as_utc(plus_two)
    assert out == NOW and out.tzinfo == timezone.utc


def test_hours_since_mixes_naive_and_aware():
    then = datetime(2026, 3, 7, 18, 30)  # naive, 17.5h before NOW
    assert hours_since(then, NOW) == pytest.approx(17.5)


def test_rolling_window_start():
    assert rolling_window_start(24, NOW) == NOW - timedelta(hours=24)
    assert rolling_window_start(1, NOW) == datetime(2026, 3, 8, 11, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("attempt,expected_seconds", [
    (1, 60),
    (2, 120),
    (5, 300),
    (0, 60),   # never schedules a retry in the past
])
def test_linear_backoff(attempt, expected_seconds):
    assert linear_backoff(attempt, 60, NOW) - NOW == timedelta(seconds=expected_seconds)
