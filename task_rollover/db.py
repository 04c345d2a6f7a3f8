"""SQLite persistence layer for daily work records and rollover state."""

from __future__ import annotations

import sqlite3
from collections import defaultdict
from collections.abc import Iterable
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .clock import ReferenceClock
from .models import NEVER, DailyWorkRecord, MergeMode, RecordPatch, RolloverLog, User

Connection = sqlite3.Connection
Row = sqlite3.Row

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        username TEXT,
        real_name TEXT,
        email TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS daily_work_entries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        date TEXT NOT NULL,
        check_in_time TEXT,
        check_out_time TEXT,
        is_absent INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(user_id, date)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS daily_task_assignments (
        user_id TEXT NOT NULL,
        date TEXT NOT NULL,
        task_id TEXT NOT NULL,
        added_at TEXT NOT NULL,
        PRIMARY KEY (user_id, date, task_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS daily_task_completions (
        user_id TEXT NOT NULL,
        date TEXT NOT NULL,
        task_id TEXT NOT NULL,
        completed_at TEXT NOT NULL,
        PRIMARY KEY (user_id, date, task_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_rollover (
        user_id TEXT PRIMARY KEY,
        last_rollover_date TEXT NOT NULL DEFAULT '1970-01-01',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rollover_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        execution_date TEXT NOT NULL,
        success_count INTEGER NOT NULL DEFAULT 0,
        error_count INTEGER NOT NULL DEFAULT 0,
        executed_at TEXT NOT NULL,
        status TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_rollover_logs_execution_date ON rollover_logs(execution_date)",
)


class StoreUnavailableError(RuntimeError):
    """Raised when the record store cannot be reached or is locked; safe to retry."""


class Database:
    """Record store for daily work entries, rollover cursors and audit logs.

    Task sets are stored one row per member so that union and removal are
    single conditional statements. Writes that touch more than one row run
    inside ``BEGIN IMMEDIATE``, which takes the database write lock up front
    and serializes concurrent writers.
    """

    def __init__(
        self,
        path: Path,
        clock: Optional[ReferenceClock] = None,
        timeout: float = 10.0,
    ) -> None:
        self._path = path
        self._timeout = timeout
        self._clock = clock or ReferenceClock(timezone.utc)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    @contextmanager
    def connect(self) -> Iterator[Connection]:
        try:
            conn = sqlite3.connect(self._path, timeout=self._timeout)
        except sqlite3.OperationalError as exc:
            raise StoreUnavailableError(f"cannot open record store: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.OperationalError as exc:
            raise StoreUnavailableError(f"record store error: {exc}") from exc
        finally:
            conn.close()

    @contextmanager
    def transaction(self, immediate: bool = True) -> Iterator[Connection]:
        with self.connect() as conn:
            conn.isolation_level = None
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _initialize(self) -> None:
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            cursor = conn.cursor()
            for statement in SCHEMA:
                cursor.execute(statement)
            conn.commit()

    def _timestamp(self) -> str:
        return self._clock.now().isoformat()

    # region Daily work records
    def get_record(self, user_id: str, day: date) -> Optional[DailyWorkRecord]:
        with self.transaction(immediate=False) as conn:
            return self._read_record(conn, user_id, day)

    def get_records_between(self, user_id: str, start: date, end: date) -> List[DailyWorkRecord]:
        params = (user_id, start.isoformat(), end.isoformat())
        with self.transaction(immediate=False) as conn:
            entries = conn.execute(
                """
                SELECT * FROM daily_work_entries
                WHERE user_id = ? AND date BETWEEN ? AND ?
                ORDER BY date
                """,
                params,
            ).fetchall()
            assigned: Dict[str, set[str]] = defaultdict(set)
            for row in conn.execute(
                "SELECT date, task_id FROM daily_task_assignments "
                "WHERE user_id = ? AND date BETWEEN ? AND ?",
                params,
            ):
                assigned[row["date"]].add(row["task_id"])
            completed: Dict[str, set[str]] = defaultdict(set)
            for row in conn.execute(
                "SELECT date, task_id FROM daily_task_completions "
                "WHERE user_id = ? AND date BETWEEN ? AND ?",
                params,
            ):
                completed[row["date"]].add(row["task_id"])
        return [
            _to_record(entry, assigned[entry["date"]], completed[entry["date"]])
            for entry in entries
        ]

    def upsert_record(self, user_id: str, day: date, patch: RecordPatch) -> DailyWorkRecord:
        """Create the record if needed and merge ``patch`` into it atomically."""

        now = self._timestamp()
        key = day.isoformat()
        assigned = None if patch.assigned_tasks is None else set(patch.assigned_tasks)
        completed = None if patch.completed_tasks is None else set(patch.completed_tasks)
        with self.transaction() as conn:
            self._ensure_entry(conn, user_id, key, now)
            if assigned is not None:
                self._write_set(
                    conn, "daily_task_assignments", "added_at",
                    user_id, key, assigned, patch.assigned_mode, now,
                )
            if completed is not None:
                self._write_set(
                    conn, "daily_task_completions", "completed_at",
                    user_id, key, completed, patch.completed_mode, now,
                )
                for task_id in completed:
                    self._close_later_assignments(conn, user_id, key, task_id)
            if assigned:
                self._hand_to_open_day(conn, user_id, key, assigned, now)
            conn.execute(
                """
                UPDATE daily_work_entries SET
                    check_in_time = COALESCE(?, check_in_time),
                    check_out_time = COALESCE(?, check_out_time),
                    is_absent = COALESCE(?, is_absent),
                    updated_at = ?
                WHERE user_id = ? AND date = ?
                """,
                (
                    _iso(patch.check_in_time),
                    _iso(patch.check_out_time),
                    None if patch.is_absent is None else int(patch.is_absent),
                    now,
                    user_id,
                    key,
                ),
            )
            record = self._read_record(conn, user_id, day)
        assert record is not None
        return record

    def move_task(self, user_id: str, from_day: date, to_day: date, task_id: str) -> bool:
        """Carry an unfinished task from one day into another.

        Returns ``False`` without writing when the task is no longer an
        unfinished member of ``from_day`` (already moved, or completed there).
        The target row is written before the source row is deleted, inside one
        transaction, so the task is never absent from both days.
        """

        now = self._timestamp()
        source, target = from_day.isoformat(), to_day.isoformat()
        with self.transaction() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM daily_task_assignments a
                WHERE a.user_id = ? AND a.date = ? AND a.task_id = ?
                  AND NOT EXISTS (
                      SELECT 1 FROM daily_task_completions c
                      WHERE c.user_id = a.user_id AND c.date = a.date AND c.task_id = a.task_id
                  )
                """,
                (user_id, source, task_id),
            ).fetchone()
            if row is None:
                return False
            self._ensure_entry(conn, user_id, target, now)
            conn.execute(
                """
                INSERT INTO daily_task_assignments (user_id, date, task_id, added_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, date, task_id) DO NOTHING
                """,
                (user_id, target, task_id, now),
            )
            conn.execute(
                "DELETE FROM daily_task_assignments WHERE user_id = ? AND date = ? AND task_id = ?",
                (user_id, source, task_id),
            )
            conn.execute(
                "UPDATE daily_work_entries SET updated_at = ? WHERE user_id = ? AND date IN (?, ?)",
                (now, user_id, source, target),
            )
        return True

    def assign_task(self, user_id: str, day: date, task_id: str) -> DailyWorkRecord:
        return self.upsert_record(user_id, day, RecordPatch(assigned_tasks=[task_id]))

    def complete_task(self, user_id: str, day: date, task_id: str) -> DailyWorkRecord:
        """Record a completion; the task stays in the day's assigned set.

        Copies of the task that rollover already carried to later days are
        withdrawn, so the task is not left open anywhere after ``day``.
        """

        now = self._timestamp()
        key = day.isoformat()
        with self.transaction() as conn:
            self._ensure_entry(conn, user_id, key, now)
            conn.execute(
                """
                INSERT INTO daily_task_assignments (user_id, date, task_id, added_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, date, task_id) DO NOTHING
                """,
                (user_id, key, task_id, now),
            )
            conn.execute(
                """
                INSERT INTO daily_task_completions (user_id, date, task_id, completed_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, date, task_id) DO NOTHING
                """,
                (user_id, key, task_id, now),
            )
            self._close_later_assignments(conn, user_id, key, task_id)
            self._touch(conn, user_id, key, now)
            record = self._read_record(conn, user_id, day)
        assert record is not None
        return record

    def uncomplete_task(self, user_id: str, day: date, task_id: str) -> DailyWorkRecord:
        """Reopen a task. On a day rollover has already walked, the task moves
        to the first day the walk has not reached, where it will keep rolling.
        """

        now = self._timestamp()
        key = day.isoformat()
        with self.transaction() as conn:
            self._ensure_entry(conn, user_id, key, now)
            conn.execute(
                "DELETE FROM daily_task_completions WHERE user_id = ? AND date = ? AND task_id = ?",
                (user_id, key, task_id),
            )
            conn.execute(
                """
                INSERT INTO daily_task_assignments (user_id, date, task_id, added_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, date, task_id) DO NOTHING
                """,
                (user_id, key, task_id, now),
            )
            self._hand_to_open_day(conn, user_id, key, [task_id], now)
            self._touch(conn, user_id, key, now)
            record = self._read_record(conn, user_id, day)
        assert record is not None
        return record

    def remove_task(self, task_id: str) -> int:
        """Withdraw a deleted task from every assigned set; completions are kept as history.

        Returns the number of assignment rows removed.
        """

        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM daily_task_assignments WHERE task_id = ?",
                (task_id,),
            )
            return cursor.rowcount

    def update_attendance(
        self,
        user_id: str,
        day: date,
        check_in_time: Optional[datetime] = None,
        check_out_time: Optional[datetime] = None,
    ) -> DailyWorkRecord:
        return self.upsert_record(
            user_id,
            day,
            RecordPatch(check_in_time=check_in_time, check_out_time=check_out_time),
        )

    def mark_absent(self, user_id: str, day: date, is_absent: bool) -> DailyWorkRecord:
        """Flag a day as absent; marking absent clears check-in and check-out."""

        now = self._timestamp()
        key = day.isoformat()
        with self.transaction() as conn:
            self._ensure_entry(conn, user_id, key, now)
            conn.execute(
                """
                UPDATE daily_work_entries SET
                    is_absent = :absent,
                    check_in_time = CASE WHEN :absent THEN NULL ELSE check_in_time END,
                    check_out_time = CASE WHEN :absent THEN NULL ELSE check_out_time END,
                    updated_at = :now
                WHERE user_id = :user_id AND date = :date
                """,
                {"absent": int(is_absent), "now": now, "user_id": user_id, "date": key},
            )
            record = self._read_record(conn, user_id, day)
        assert record is not None
        return record

    def _ensure_entry(self, conn: Connection, user_id: str, key: str, now: str) -> None:
        conn.execute(
            """
            INSERT INTO daily_work_entries (user_id, date, is_absent, created_at, updated_at)
            VALUES (?, ?, 0, ?, ?)
            ON CONFLICT(user_id, date) DO NOTHING
            """,
            (user_id, key, now, now),
        )

    def _touch(self, conn: Connection, user_id: str, key: str, now: str) -> None:
        conn.execute(
            "UPDATE daily_work_entries SET updated_at = ? WHERE user_id = ? AND date = ?",
            (now, user_id, key),
        )

    def _close_later_assignments(self, conn: Connection, user_id: str, key: str, task_id: str) -> None:
        conn.execute(
            """
            DELETE FROM daily_task_assignments
            WHERE user_id = ? AND task_id = ? AND date > ?
              AND NOT EXISTS (
                  SELECT 1 FROM daily_task_completions c
                  WHERE c.user_id = daily_task_assignments.user_id
                    AND c.date = daily_task_assignments.date
                    AND c.task_id = daily_task_assignments.task_id
              )
            """,
            (user_id, task_id, key),
        )

    def _hand_to_open_day(
        self,
        conn: Connection,
        user_id: str,
        key: str,
        task_ids: Iterable[str],
        now: str,
    ) -> None:
        # The walk never revisits days at or before the cursor.
        row = conn.execute(
            "SELECT last_rollover_date FROM user_rollover WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        if row is None or key > row["last_rollover_date"]:
            return
        open_day = (date.fromisoformat(row["last_rollover_date"]) + timedelta(days=1)).isoformat()
        for task_id in task_ids:
            done_here = conn.execute(
                "SELECT 1 FROM daily_task_completions WHERE user_id = ? AND date = ? AND task_id = ?",
                (user_id, key, task_id),
            ).fetchone()
            if done_here is not None:
                continue
            self._ensure_entry(conn, user_id, open_day, now)
            conn.execute(
                """
                INSERT INTO daily_task_assignments (user_id, date, task_id, added_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, date, task_id) DO NOTHING
                """,
                (user_id, open_day, task_id, now),
            )
            conn.execute(
                "DELETE FROM daily_task_assignments WHERE user_id = ? AND date = ? AND task_id = ?",
                (user_id, key, task_id),
            )
            self._touch(conn, user_id, open_day, now)

    def _write_set(
        self,
        conn: Connection,
        table: str,
        stamp_column: str,
        user_id: str,
        key: str,
        task_ids: Iterable[str],
        mode: MergeMode,
        now: str,
    ) -> None:
        if mode is MergeMode.REPLACE:
            conn.execute(f"DELETE FROM {table} WHERE user_id = ? AND date = ?", (user_id, key))
        conn.executemany(
            f"""
            INSERT INTO {table} (user_id, date, task_id, {stamp_column})
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id, date, task_id) DO NOTHING
            """,
            [(user_id, key, task_id, now) for task_id in set(task_ids)],
        )

    def _read_record(self, conn: Connection, user_id: str, day: date) -> Optional[DailyWorkRecord]:
        key = day.isoformat()
        entry = conn.execute(
            "SELECT * FROM daily_work_entries WHERE user_id = ? AND date = ?",
            (user_id, key),
        ).fetchone()
        if entry is None:
            return None
        assigned = {
            row["task_id"]
            for row in conn.execute(
                "SELECT task_id FROM daily_task_assignments WHERE user_id = ? AND date = ?",
                (user_id, key),
            )
        }
        completed = {
            row["task_id"]
            for row in conn.execute(
                "SELECT task_id FROM daily_task_completions WHERE user_id = ? AND date = ?",
                (user_id, key),
            )
        }
        return _to_record(entry, assigned, completed)

    # endregion

    # region Rollover cursor
    def get_cursor(self, user_id: str) -> date:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT last_rollover_date FROM user_rollover WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return NEVER
        return date.fromisoformat(row["last_rollover_date"])

    def advance_cursor(self, user_id: str, new_date: date) -> date:
        """Move the cursor forward to ``new_date``; never moves it backwards.

        Returns the cursor value after the call.
        """

        now = self._timestamp()
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO user_rollover (user_id, last_rollover_date, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    last_rollover_date = excluded.last_rollover_date,
                    updated_at = excluded.updated_at
                WHERE excluded.last_rollover_date > user_rollover.last_rollover_date
                """,
                (user_id, new_date.isoformat(), now, now),
            )
            row = conn.execute(
                "SELECT last_rollover_date FROM user_rollover WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return date.fromisoformat(row["last_rollover_date"])

    # endregion

    # region Users
    def upsert_user(self, user: User) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO users (id, username, real_name, email, is_active, updated_at)
                VALUES (:id, :username, :real_name, :email, :is_active, :updated_at)
                ON CONFLICT(id) DO UPDATE SET
                    username=excluded.username,
                    real_name=excluded.real_name,
                    email=excluded.email,
                    is_active=excluded.is_active,
                    updated_at=excluded.updated_at
                """,
                {
                    "id": user.id,
                    "username": user.username,
                    "real_name": user.real_name,
                    "email": user.email,
                    "is_active": int(user.is_active),
                    "updated_at": self._timestamp(),
                },
            )
            conn.commit()

    def get_active_users(self) -> List[User]:
        with self.connect() as conn:
            cursor = conn.execute(
                "SELECT * FROM users WHERE is_active = 1 ORDER BY real_name, id"
            )
            return [
                User(
                    id=row["id"],
                    username=row["username"],
                    real_name=row["real_name"],
                    email=row["email"],
                    is_active=bool(row["is_active"]),
                )
                for row in cursor.fetchall()
            ]

    # endregion

    # region Rollover logs
    def record_rollover_log(self, log: RolloverLog) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO rollover_logs (execution_date, success_count, error_count, executed_at, status)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    log.execution_date.isoformat(),
                    log.success_count,
                    log.error_count,
                    log.executed_at.isoformat(),
                    log.status,
                ),
            )
            conn.commit()

    def get_rollover_logs(self, limit: int = 30) -> List[RolloverLog]:
        with self.connect() as conn:
            cursor = conn.execute(
                "SELECT * FROM rollover_logs ORDER BY executed_at DESC, id DESC LIMIT ?",
                (limit,),
            )
            return [
                RolloverLog(
                    execution_date=date.fromisoformat(row["execution_date"]),
                    success_count=row["success_count"],
                    error_count=row["error_count"],
                    executed_at=datetime.fromisoformat(row["executed_at"]),
                    status=row["status"],
                )
                for row in cursor.fetchall()
            ]

    # endregion


def _to_record(entry: Row, assigned: Iterable[str], completed: Iterable[str]) -> DailyWorkRecord:
    return DailyWorkRecord(
        user_id=entry["user_id"],
        day=date.fromisoformat(entry["date"]),
        assigned_tasks=frozenset(assigned),
        completed_tasks=frozenset(completed),
        check_in_time=_parse(entry["check_in_time"]),
        check_out_time=_parse(entry["check_out_time"]),
        is_absent=bool(entry["is_absent"]),
        created_at=_parse(entry["created_at"]),
        updated_at=_parse(entry["updated_at"]),
    )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


__all__ = ["Database", "StoreUnavailableError"]
