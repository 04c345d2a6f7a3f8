from datetime import datetime, time
from pathlib import Path

import pytest

from task_rollover.clock import ReferenceClock
from task_rollover.config import Settings
from task_rollover.db import Database
from task_rollover.rollover import RolloverEngine

from .support import TUE, TZ, FakeNow


@pytest.fixture
def fake_now() -> FakeNow:
    return FakeNow(datetime.combine(TUE, time(10, 0), tzinfo=TZ))


@pytest.fixture
def clock(fake_now: FakeNow) -> ReferenceClock:
    return ReferenceClock(TZ, fake_now)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "rollover.db"


@pytest.fixture
def database(db_path: Path, clock: ReferenceClock) -> Database:
    return Database(db_path, clock)


@pytest.fixture
def engine(database: Database, clock: ReferenceClock) -> RolloverEngine:
    return RolloverEngine(database, clock)


@pytest.fixture
def settings(tmp_path: Path, db_path: Path) -> Settings:
    return Settings(
        api_key="test-key",
        database_path=db_path,
        timezone="Asia/Kolkata",
        rollover_hour=0,
        rollover_max_attempts=2,
        rollover_retry_backoff=0.0,
        team_roster_path=tmp_path / "team_roster.csv",
    )
