"""Dataclasses representing the daily work and rollover domain."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional

NEVER = date(1970, 1, 1)


class MergeMode(str, Enum):
    UNION = "union"
    REPLACE = "replace"


@dataclass(slots=True)
class User:
    id: str
    username: str
    real_name: str
    email: str | None = None
    is_active: bool = True


@dataclass(slots=True)
class DailyWorkRecord:
    user_id: str
    day: date
    assigned_tasks: FrozenSet[str] = frozenset()
    completed_tasks: FrozenSet[str] = frozenset()
    check_in_time: Optional[datetime] = None
    check_out_time: Optional[datetime] = None
    is_absent: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def unfinished_tasks(self) -> FrozenSet[str]:
        return self.assigned_tasks - self.completed_tasks

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "date": self.day.isoformat(),
            "assigned_tasks": sorted(self.assigned_tasks),
            "completed_tasks": sorted(self.completed_tasks),
            "unfinished_tasks": sorted(self.unfinished_tasks),
            "check_in_time": _iso(self.check_in_time),
            "check_out_time": _iso(self.check_out_time),
            "is_absent": self.is_absent,
        }


@dataclass(slots=True)
class RecordPatch:
    """Partial update applied by ``Database.upsert_record``.

    ``None`` leaves a field untouched. The merge modes decide whether a task
    set is unioned into the stored one or replaces it.
    """

    assigned_tasks: Optional[Iterable[str]] = None
    completed_tasks: Optional[Iterable[str]] = None
    assigned_mode: MergeMode = MergeMode.UNION
    completed_mode: MergeMode = MergeMode.REPLACE
    check_in_time: Optional[datetime] = None
    check_out_time: Optional[datetime] = None
    is_absent: Optional[bool] = None


@dataclass(slots=True)
class RolloverLog:
    execution_date: date
    success_count: int
    error_count: int
    executed_at: datetime
    status: str
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_date": self.execution_date.isoformat(),
            "success_count": self.success_count,
            "error_count": self.error_count,
            "executed_at": self.executed_at.isoformat(),
            "status": self.status,
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


__all__ = [
    "NEVER",
    "MergeMode",
    "User",
    "DailyWorkRecord",
    "RecordPatch",
    "RolloverLog",
]
