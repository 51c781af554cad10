"""Injectable clock for calendar-month quota windows."""

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """Clock pinned to a settable instant (tests, replays)."""

    def __init__(self, instant: datetime):
        self._instant = instant

    def now(self) -> datetime:
        return self._instant

    def set(self, instant: datetime) -> None:
        self._instant = instant


def month_start(instant: datetime) -> datetime:
    """First instant of instant's calendar month, in UTC."""
    instant = instant.astimezone(timezone.utc) if instant.tzinfo else instant.replace(tzinfo=timezone.utc)
    return instant.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def day_key(instant: datetime) -> str:
    """UTC calendar day as YYYY-MM-DD."""
    instant = instant.astimezone(timezone.utc) if instant.tzinfo else instant.replace(tzinfo=timezone.utc)
    return instant.strftime("%Y-%m-%d")
