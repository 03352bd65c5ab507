"""Unit tests for UTC conversion and duration helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from time_utils import ensure_utc, seconds_between, utc_now, whole_days_between


def test_utc_now_is_aware() -> None:
    """utc_now returns an aware UTC datetime."""
    assert utc_now().tzinfo == timezone.utc


def test_ensure_utc_treats_naive_values_as_utc() -> None:
    """Naive datetimes are tagged as UTC without shifting the clock."""
    converted = ensure_utc(datetime(2026, 3, 2, 12, 0))

    assert converted.tzinfo == timezone.utc
    assert converted.hour == 12


def test_ensure_utc_converts_offsets() -> None:
    """Aware datetimes in other zones are converted to UTC."""
    local = datetime(2026, 3, 2, 12, 0, tzinfo=timezone(timedelta(hours=2)))

    assert ensure_utc(local) == datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def test_seconds_between_truncates_and_mixes_zones() -> None:
    """Durations truncate fractional seconds and accept naive UTC inputs."""
    start = datetime(2026, 3, 2, 12, 0)
    end = datetime(2026, 3, 2, 12, 2, 0, 900000, tzinfo=timezone.utc)

    assert seconds_between(start, end) == 120
    assert seconds_between(end, start) == -120


def test_whole_days_between_counts_complete_days() -> None:
    """Partial days are not counted."""
    start = datetime(2026, 3, 1, tzinfo=timezone.utc)

    assert whole_days_between(start, start + timedelta(days=6, hours=23)) == 6
    assert whole_days_between(start, start + timedelta(days=7)) == 7
