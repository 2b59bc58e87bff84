"""
Wall-clock access for the HTTP and worker edges.

Core operations never read the time themselves; they receive ``current_date``
or ``scan_timestamp`` from a Clock handed in by the caller.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from app.core.config import get_settings


class Clock:
    """System clock pinned to the gym's calendar timezone."""

    def __init__(self, tz: str = "UTC"):
        self.tz = ZoneInfo(tz)

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def today(self) -> date:
        return self.local_date(self.now())

    def local_date(self, moment: datetime) -> date:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(self.tz).date()


class FixedClock(Clock):
    """A clock frozen at one instant (tests, manual re-runs for a given day)."""

    def __init__(self, moment: datetime, tz: str = "UTC"):
        super().__init__(tz)
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        self.moment = moment

    def now(self) -> datetime:
        return self.moment


def get_clock() -> Clock:
    """FastAPI dependency; overridden in tests."""
    return Clock(get_settings().timezone)
