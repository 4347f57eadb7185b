"""Date manipulation utilities"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional

from dateutil.relativedelta import relativedelta


def add_months(from_date: date, months: int) -> date:
    """Step by calendar months, clamping to the last day of short months (Jan 31 + 1 = Feb 28/29)"""
    return from_date + relativedelta(months=months)


def add_days(from_date: date, days: int) -> date:
    return from_date + timedelta(days=days)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from stores that drop tzinfo (SQLite)"""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class SystemClock:
    """Injectable source of the current time"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def today(self) -> date:
        return self.now().date()


class FixedClock(SystemClock):
    """Clock pinned to a given instant; `advance` moves it forward"""

    def __init__(self, instant: datetime):
        self.instant = ensure_utc(instant)

    def now(self) -> datetime:
        return self.instant

    def advance(self, **kwargs) -> None:
        self.instant = self.instant + timedelta(**kwargs)
