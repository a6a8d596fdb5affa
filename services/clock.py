# services/clock.py
"""
Calendar helpers at day granularity in a fixed reference timezone.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Protocol
from zoneinfo import ZoneInfo


class Clock(Protocol):
    def today(self) -> date: ...

    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock; `today()` is the calendar date in the reference timezone."""

    def __init__(self, timezone_name: str = "UTC"):
        self.tz = ZoneInfo(timezone_name)

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def today(self) -> date:
        return self.now().date()


class FixedClock:
    """Settable clock for tests and backfills."""

    def __init__(self, day: date, at: Optional[datetime] = None):
        self._day = day
        self._now = at or datetime(day.year, day.month, day.day, tzinfo=timezone.utc)

    def today(self) -> date:
        return self._day

    def now(self) -> datetime:
        return self._now

    def set(self, day: date) -> None:
        self._day = day
        self._now = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)

    def advance(self, days: int = 1) -> None:
        self.set(self._day + timedelta(days=days))


def days_between(today: date, renewal_date: date) -> int:
    """Signed day offset: positive = renewal in the future, 0 = due today, negative = overdue."""
    if isinstance(today, datetime):
        today = today.date()
    if isinstance(renewal_date, datetime):
        renewal_date = renewal_date.date()
    return (renewal_date - today).days
