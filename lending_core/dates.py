"""
Calendar Date Helpers

Dates in the lending engine are plain calendar dates with no time of day.
A "week" is exactly seven calendar days, not a business week.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

TodayProvider = Callable[[], date]


def add_weeks(start: date, weeks: int) -> date:
    """Add exactly ``7 * weeks`` calendar days"""
    return start + timedelta(days=7 * weeks)


def days_between(earlier: date, later: date) -> int:
    """Signed number of days from ``earlier`` to ``later``"""
    return (later - earlier).days


def utc_today() -> date:
    """Current UTC calendar date"""
    return datetime.now(timezone.utc).date()


def fixed_today(value: date) -> TodayProvider:
    """Provider that always answers ``value`` (reports, tests)"""
    return lambda: value


def parse_date(value: Optional[str]) -> Optional[date]:
    """Parse an ISO date string, passing None through"""
    if not value:
        return None
    return date.fromisoformat(value)


def format_date(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None
