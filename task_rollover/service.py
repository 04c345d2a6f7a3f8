"""Core orchestration logic shared by the rollover trigger surfaces."""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from .clock import ReferenceClock
from .config import Settings
from .db import Database, StoreUnavailableError
from .models import DailyWorkRecord, RolloverLog
from .rollover import RolloverEngine, RolloverError, RolloverResult
from .roster_client import RosterApiError, RosterClient, load_roster_csv

logger = logging.getLogger(__name__)


class ClockMismatchError(ValueError):
    """Raised when a caller's idea of today disagrees with the reference clock."""

    def __init__(self, expected: date, actual: date) -> None:
        super().__init__(
            f"caller expected {expected.isoformat()} but reference date is {actual.isoformat()}"
        )
        self.expected = expected
        self.actual = actual


class TaskRolloverService:
    """High-level service that every trigger surface goes through."""

    def __init__(
        self,
        settings: Settings,
        database: Database,
        clock: ReferenceClock,
        roster_client: Optional[RosterClient] = None,
    ) -> None:
        self.settings = settings
        self.database = database
        self.clock = clock
        self.roster_client = roster_client
        self.engine = RolloverEngine(database, clock, settings.max_lookback_days)

    # region Sync helpers
    async def sync_roster(self) -> int:
        synced = 0
        roster_path = self.settings.team_roster_path
        if roster_path and roster_path.exists():
            for user in load_roster_csv(roster_path):
                self.database.upsert_user(user)
                synced += 1

        if self.roster_client is not None:
            for user in await self.roster_client.fetch_active_users():
                self.database.upsert_user(user)
                synced += 1
        return synced

    # endregion

    # region Rollover triggers
    async def run_rollover(self, user_id: str, target_date: Optional[date] = None) -> RolloverResult:
        """Run the engine, retrying transient store failures with backoff."""

        attempt = 1
        max_attempts = self.settings.rollover_max_attempts
        while True:
            try:
                return self.engine.run_rollover(user_id, target_date)
            except (RolloverError, StoreUnavailableError) as exc:
                if attempt >= max_attempts:
                    raise
                wait = self.settings.rollover_retry_backoff * 2 ** (attempt - 1)
                logger.warning(
                    "Rollover attempt %s/%s for %s failed, retrying in %.2fs: %s",
                    attempt,
                    max_attempts,
                    user_id,
                    wait,
                    exc,
                )
                await asyncio.sleep(wait)
                attempt += 1

    async def get_daily_view(self, user_id: str, day: date) -> Dict[str, Any]:
        """Bring a user's rollover up to date, then read the requested day.

        A failed rollover does not fail the read; the view is flagged stale
        so the caller can retry later.
        """

        rollover: Optional[RolloverResult] = None
        stale = False
        try:
            rollover = await self.run_rollover(user_id, day)
        except (RolloverError, StoreUnavailableError) as exc:
            logger.warning("Serving %s for %s without rollover: %s", day, user_id, exc)
            stale = True

        record = self.database.get_record(user_id, day)
        return {
            "date": day.isoformat(),
            "exists": record is not None,
            "record": (record or DailyWorkRecord(user_id=user_id, day=day)).to_dict(),
            "rollover": rollover.to_dict() if rollover else None,
            "stale": stale,
        }

    def is_rollover_time(self, moment: Optional[datetime] = None) -> bool:
        current = moment.astimezone(self.clock.tz) if moment else self.clock.now()
        return current.hour == self.settings.rollover_hour

    async def run_scheduled_rollover(
        self,
        force: bool = False,
        expected_date: Optional[date] = None,
    ) -> Dict[str, Any]:
        """Roll every active user forward to today and record one audit log."""

        now = self.clock.now()
        today = now.date()
        if expected_date is not None and expected_date != today:
            raise ClockMismatchError(expected_date, today)
        if not force and not self.is_rollover_time(now):
            logger.info("Not rollover time (%s); skipping scheduled run", now.isoformat())
            return {"should_run": False, "current_time": now.isoformat()}

        try:
            await self.sync_roster()
        except RosterApiError as exc:
            logger.warning("Roster refresh failed, using stored roster: %s", exc)

        users = self.database.get_active_users()
        logger.info("Starting scheduled rollover for %s (%s active users)", today, len(users))

        success_count = 0
        failed_users: List[str] = []
        for user in users:
            try:
                await self.run_rollover(user.id, today)
                success_count += 1
            except (RolloverError, StoreUnavailableError) as exc:
                failed_users.append(user.id)
                logger.error("Scheduled rollover failed for %s (%s): %s", user.username, user.id, exc)

        error_count = len(failed_users)
        if error_count == 0:
            status = "success"
        elif success_count:
            status = "partial_success"
        else:
            status = "failed"

        log = RolloverLog(
            execution_date=today,
            success_count=success_count,
            error_count=error_count,
            executed_at=self.clock.now(),
            status=status,
            errors=failed_users,
        )
        try:
            self.database.record_rollover_log(log)
        except StoreUnavailableError as exc:
            logger.warning("Could not write rollover log for %s: %s", today, exc)
        logger.info(
            "Scheduled rollover completed: %s success, %s errors", success_count, error_count
        )
        return {
            "should_run": True,
            "current_time": now.isoformat(),
            "result": log.to_dict(),
            "failed_users": failed_users,
        }

    # endregion

    # region Record helpers
    def get_records(self, user_id: str, start: date, end: date) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in self.database.get_records_between(user_id, start, end)]

    def assign_task(self, user_id: str, day: date, task_id: str) -> Dict[str, Any]:
        return self.database.assign_task(user_id, day, task_id).to_dict()

    def complete_task(self, user_id: str, day: date, task_id: str) -> Dict[str, Any]:
        return self.database.complete_task(user_id, day, task_id).to_dict()

    def uncomplete_task(self, user_id: str, day: date, task_id: str) -> Dict[str, Any]:
        return self.database.uncomplete_task(user_id, day, task_id).to_dict()

    def remove_task(self, task_id: str) -> Dict[str, Any]:
        removed = self.database.remove_task(task_id)
        logger.info("Removed task %s from %s daily records", task_id, removed)
        return {"task_id": task_id, "removed": removed}

    def get_record(self, user_id: str, day: date) -> Optional[Dict[str, Any]]:
        record = self.database.get_record(user_id, day)
        return record.to_dict() if record else None

    def update_attendance(
        self,
        user_id: str,
        day: date,
        check_in_time: Optional[datetime] = None,
        check_out_time: Optional[datetime] = None,
        is_absent: Optional[bool] = None,
    ) -> Dict[str, Any]:
        if is_absent:
            return self.database.mark_absent(user_id, day, True).to_dict()
        if is_absent is False:
            self.database.mark_absent(user_id, day, False)
        return self.database.update_attendance(user_id, day, check_in_time, check_out_time).to_dict()

    def get_rollover_status(self, user_id: str) -> Dict[str, Any]:
        return {
            "user_id": user_id,
            "last_rollover_date": self.database.get_cursor(user_id).isoformat(),
            "reference_date": self.clock.today().isoformat(),
        }

    def get_rollover_logs(self, limit: int = 30) -> List[Dict[str, Any]]:
        return [log.to_dict() for log in self.database.get_rollover_logs(limit)]

    # endregion


__all__ = ["TaskRolloverService", "ClockMismatchError"]
