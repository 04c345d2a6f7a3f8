"""Daily task rollover: carries unfinished work forward one day at a time."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Dict, Optional

from .clock import ReferenceClock
from .db import Database, StoreUnavailableError

logger = logging.getLogger(__name__)

MAX_LOOKBACK_DAYS = 30
ONE_DAY = timedelta(days=1)


class RolloverError(RuntimeError):
    """Raised when a rollover walk stops on a store failure."""

    def __init__(self, user_id: str, day: date, cause: BaseException) -> None:
        super().__init__(f"rollover for {user_id} failed on {day.isoformat()}: {cause}")
        self.user_id = user_id
        self.day = day


@dataclass(slots=True)
class RolloverResult:
    user_id: str
    target_date: date
    start_date: Optional[date]
    days_scanned: int
    tasks_moved: int
    cursor: date

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "target_date": self.target_date.isoformat(),
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "days_scanned": self.days_scanned,
            "tasks_moved": self.tasks_moved,
            "cursor": self.cursor.isoformat(),
        }


class RolloverEngine:
    """Walks a user's days up to a target date and carries unfinished tasks.

    Each source day ``d`` hands its unfinished tasks (assigned but not
    completed on ``d``) to ``d + 1``. Days are processed strictly in
    chronological order because a day's carry depends on what the previous
    day handed it. The walk is exclusive of the target: the target date only
    receives tasks, it never gives any away.

    Re-running is always safe. Once a day has been walked it has no
    unfinished tasks left, so a second pass finds nothing to move; the
    per-user cursor only bounds how far back the walk starts.
    """

    def __init__(
        self,
        database: Database,
        clock: ReferenceClock,
        max_lookback_days: int = MAX_LOOKBACK_DAYS,
    ) -> None:
        self.database = database
        self.clock = clock
        self.max_lookback_days = max_lookback_days

    def run_rollover(self, user_id: str, target_date: Optional[date] = None) -> RolloverResult:
        today = self.clock.today()
        # Today's open work is still today's; never roll it into a future day.
        target = today if target_date is None else min(target_date, today)

        cursor = self.database.get_cursor(user_id)
        start = max(cursor + ONE_DAY, target - timedelta(days=self.max_lookback_days))
        if start >= target:
            logger.debug("Rollover for %s already applied through %s", user_id, cursor)
            return RolloverResult(user_id, target, None, 0, 0, cursor)

        logger.info("Rolling over tasks for %s from %s to %s", user_id, start, target)
        moved = 0
        scanned = 0
        day = start
        while day < target:
            try:
                moved += self._carry_day(user_id, day)
            except StoreUnavailableError as exc:
                if day > start:
                    try:
                        self.database.advance_cursor(user_id, day - ONE_DAY)
                    except StoreUnavailableError as cursor_exc:
                        logger.warning("Could not save rollover cursor for %s: %s", user_id, cursor_exc)
                logger.warning("Rollover for %s stopped on %s: %s", user_id, day, exc)
                raise RolloverError(user_id, day, exc) from exc
            scanned += 1
            day += ONE_DAY

        cursor = self.database.advance_cursor(user_id, target - ONE_DAY)
        logger.info(
            "Rollover for %s complete: %s days scanned, %s tasks moved, cursor %s",
            user_id,
            scanned,
            moved,
            cursor,
        )
        return RolloverResult(user_id, target, start, scanned, moved, cursor)

    def _carry_day(self, user_id: str, day: date) -> int:
        record = self.database.get_record(user_id, day)
        if record is None or not record.assigned_tasks:
            return 0
        unfinished = record.unfinished_tasks
        if not unfinished:
            return 0

        next_day = day + ONE_DAY
        moved = 0
        for task_id in sorted(unfinished):
            if self.database.move_task(user_id, day, next_day, task_id):
                moved += 1
        logger.debug("Carried %s of %s unfinished tasks for %s: %s -> %s",
                     moved, len(unfinished), user_id, day, next_day)
        return moved


__all__ = ["MAX_LOOKBACK_DAYS", "RolloverEngine", "RolloverError", "RolloverResult"]
