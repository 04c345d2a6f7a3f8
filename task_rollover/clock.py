"""Reference clock shared by every trigger surface."""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime, timezone, tzinfo
from typing import Optional


class ReferenceClock:
    """Answers "what day is it" in a single fixed zone.

    Every caller that needs the current date receives one of these instead of
    reading the wall clock, so the scheduled job and an interactive request can
    never disagree about the day boundary. ``now`` may be supplied to pin time
    in tests; it must return an aware datetime.
    """

    def __init__(self, tz: tzinfo, now: Optional[Callable[[], datetime]] = None) -> None:
        self.tz = tz
        self._now = now or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        current = self._now()
        if current.tzinfo is None:
            raise ValueError("reference clock requires timezone-aware datetimes")
        return current.astimezone(self.tz)

    def today(self) -> date:
        return self.now().date()


__all__ = ["ReferenceClock"]
