"""Reporting window arithmetic in the reporting timezone."""

from datetime import datetime, timezone

from app.core.windows import (
    chunked,
    days_ago,
    period_days,
    report_today,
    resolve_window,
    validate_date,
    yesterday_window,
)

from conftest import FIXED_NOW


def test_yesterday_window():
    assert yesterday_window(7, FIXED_NOW) == ("2024-08-30", "2024-09-05")
    assert yesterday_window(30, FIXED_NOW) == ("2024-08-07", "2024-09-05")
    assert yesterday_window(1, FIXED_NOW) == ("2024-09-05", "2024-09-05")


def test_today_follows_reporting_timezone():
    # 02:00 UTC on the 7th is still the evening of the 6th in São Paulo
    late = datetime(2024, 9, 7, 2, 0, tzinfo=timezone.utc)
    assert report_today(late).isoformat() == "2024-09-06"
    assert yesterday_window(7, late) == ("2024-08-30", "2024-09-05")


def test_resolve_window_keeps_explicit_dates():
    assert resolve_window(7, "2024-01-01", "2024-01-07", FIXED_NOW) == ("2024-01-01", "2024-01-07")
    # a single date is not enough to pin the window
    assert resolve_window(7, "2024-01-01", None, FIXED_NOW) == ("2024-08-30", "2024-09-05")


def test_period_days_is_inclusive():
    assert period_days("2024-08-30", "2024-09-05") == 7
    assert period_days("2024-09-05", "2024-09-05") == 1


def test_validate_date():
    assert validate_date("2024-02-29") == "2024-02-29"
    assert validate_date("2023-02-29") is None
    assert validate_date("05/09/2024") is None
    assert validate_date(None) is None


def test_days_ago():
    assert days_ago(7, FIXED_NOW) == "2024-08-30"


def test_chunked():
    assert list(chunked(["a", "b", "c", "d", "e"], 2)) == [["a", "b"], ["c", "d"], ["e"]]
    assert list(chunked([], 3)) == []
