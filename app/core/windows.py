"""ADSYNC — Reporting Window Helpers.

A window is an inclusive date range plus its length in days. Windows derived
here always end "yesterday" in the reporting timezone, the last day whose
platform data is final. Explicit dates passed by a caller are never
recomputed.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Iterator, List, Optional, Sequence, TypeVar
from zoneinfo import ZoneInfo

from app.config import settings

T = TypeVar("T")

DATE_FMT = "%Y-%m-%d"


def report_today(now: Optional[datetime] = None) -> date:
    """Current calendar date in the reporting timezone."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(ZoneInfo(settings.report_timezone)).date()


def validate_date(d: Optional[str]) -> Optional[str]:
    """Return the date string if valid YYYY-MM-DD, else None."""
    if not d:
        return None
    try:
        datetime.strptime(d, DATE_FMT)
        return d
    except ValueError:
        return None


def yesterday_window(days: int, now: Optional[datetime] = None) -> tuple[str, str]:
    """Window of ``days`` days ending yesterday.

    Today 2024-09-06 with days=7 gives 2024-08-30 → 2024-09-05.
    """
    end = report_today(now) - timedelta(days=1)
    start = end - timedelta(days=days - 1)
    return start.strftime(DATE_FMT), end.strftime(DATE_FMT)


def resolve_window(
    days: int,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    now: Optional[datetime] = None,
) -> tuple[str, str]:
    """Use the caller's dates verbatim when both are given, else derive them."""
    if start_date and end_date:
        return start_date, end_date
    return yesterday_window(days, now)


def period_days(start_date: str, end_date: str) -> int:
    """Inclusive number of days between two YYYY-MM-DD strings."""
    start = datetime.strptime(start_date, DATE_FMT)
    end = datetime.strptime(end_date, DATE_FMT)
    return abs((end - start).days) + 1


def days_ago(days: int, now: Optional[datetime] = None) -> str:
    return (report_today(now) - timedelta(days=days)).strftime(DATE_FMT)


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    for i in range(0, len(items), size):
        yield list(items[i : i + size])
