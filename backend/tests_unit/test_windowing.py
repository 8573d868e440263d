"""
Sync Window Tests (Unit)
========================

WHAT: Unit tests for fill/fresh window computation and cursor parsing.
WHY: Off-by-one errors at window edges either skip a day forever or refetch
     days inside the attribution window.

NOTE:
These tests live outside `backend/syncengine/tests/` to avoid loading the
database fixtures; everything here is pure.

REFERENCES:
- backend/syncengine/services/windowing.py
"""

from datetime import date

import pytest

from syncengine.services.windowing import (
    day_start_iso,
    enumerate_dates,
    fill_window,
    fresh_window,
    parse_cursor_date,
    to_cursor_timestamp,
    watermark_date_for_timestamp,
)


def test_fill_window_is_trailing_seven_days_ending_yesterday() -> None:
    window = fill_window(date(2024, 1, 8))

    assert window.start == date(2024, 1, 1)
    assert window.end == date(2024, 1, 7)
    assert window.date_strings == [f"2024-01-0{d}" for d in range(1, 8)]


def test_fill_window_crosses_month_boundary() -> None:
    window = fill_window(date(2024, 3, 3), days=3)

    assert window.date_strings == ["2024-02-29", "2024-03-01", "2024-03-02"]


def test_fresh_window_first_run_uses_lookback() -> None:
    window = fresh_window(date(2024, 2, 10), watermark_date=None, default_lookback_days=30, lag_days=7)

    assert window.start == date(2024, 1, 11)
    assert window.end == date(2024, 2, 3)
    assert len(window.dates) == 24


def test_fresh_window_starts_day_after_date_watermark() -> None:
    window = fresh_window(date(2024, 1, 20), watermark_date=date(2024, 1, 10), default_lookback_days=30, lag_days=7)

    assert window.date_strings == ["2024-01-11", "2024-01-12", "2024-01-13"]


def test_fresh_window_is_empty_when_caught_up() -> None:
    """Watermark already at today - lag: nothing to fetch, no negative range."""
    window = fresh_window(date(2024, 1, 20), watermark_date=date(2024, 1, 13), default_lookback_days=30, lag_days=7)

    assert window.is_empty
    assert window.start > window.end


def test_fresh_window_resumes_on_timestamp_watermark_day() -> None:
    window = fresh_window(
        date(2024, 1, 8),
        watermark_date=date(2024, 1, 7),
        default_lookback_days=7,
        resume_on_watermark_day=True,
    )

    assert window.date_strings == ["2024-01-07"]


def test_enumerate_dates_empty_when_reversed() -> None:
    assert enumerate_dates(date(2024, 1, 5), date(2024, 1, 4)) == []


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2024-01-07T23:00:00Z", "2024-01-07T23:00:00Z"),
        ("2024-01-07T23:00:00.456Z", "2024-01-07T23:00:00Z"),
        ("2024-01-08T01:00:00+02:00", "2024-01-07T23:00:00Z"),
        (None, None),
        ("not a timestamp", None),
    ],
)
def test_to_cursor_timestamp_canonicalizes_to_utc(value, expected) -> None:
    assert to_cursor_timestamp(value) == expected


def test_watermark_date_uses_utc_calendar_date() -> None:
    assert watermark_date_for_timestamp("2024-01-08T01:00:00+02:00") == date(2024, 1, 7)
    assert watermark_date_for_timestamp(None) is None


def test_parse_cursor_date() -> None:
    assert parse_cursor_date("2024-01-13") == date(2024, 1, 13)
    assert parse_cursor_date("") is None


def test_day_start_iso() -> None:
    assert day_start_iso(date(2024, 1, 1)) == "2024-01-01T00:00:00Z"
