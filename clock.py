"""
Clock collaborators. Every engine takes a clock so tests can pin "today".
"""

from datetime import date, datetime, timedelta
from typing import Optional

import pytz

from config import Config


class SystemClock:
    """Wall clock in the configured local timezone."""

    def __init__(self, timezone: Optional[str] = None):
        self.tz = pytz.timezone(timezone or Config.TIMEZONE)

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def today(self) -> date:
        return self.now().date()


class FixedClock:
    """A clock that only moves when told to."""

    def __init__(self, current: datetime):
        self.current = current

    def now(self) -> datetime:
        return self.current

    def today(self) -> date:
        return self.current.date()

    def advance(self, days: int = 0, hours: int = 0, minutes: int = 0):
        self.current = self.current + timedelta(days=days, hours=hours, minutes=minutes)
