from datetime import date
from pathlib import Path
from typing import Optional

import httpx
import pytest

from task_rollover.clock import ReferenceClock
from task_rollover.config import Settings
from task_rollover.db import Database, StoreUnavailableError
from task_rollover.models import User
from task_rollover.rollover import RolloverError, RolloverResult
from task_rollover.roster_client import RosterApiError, RosterClient, load_roster_csv
from task_rollover.service import ClockMismatchError, TaskRolloverService

from .support import MON, TUE, FakeNow


def write_roster(path: Path) -> None:
    path.write_text(
        "user_id,username,real_name,email,is_active\n"
        "u1,ana,Ana Rao,ana@example.com,true\n"
        "u2,bo,Bo Chen,,true\n"
        "u3,cy,Cy Old,,false\n",
        encoding="utf-8",
    )


def roster_transport(pages: list[dict], status_code: int = 200) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["is_active"] == "true"
        cursor = request.url.params.get("cursor")
        index = int(cursor) if cursor else 0
        return httpx.Response(status_code, json=pages[index])

    return httpx.MockTransport(handler)


@pytest.fixture
def service(settings: Settings, database: Database, clock: ReferenceClock) -> TaskRolloverService:
    return TaskRolloverService(settings, database, clock)


@pytest.mark.unit
def test_load_roster_csv_reads_active_flag(tmp_path: Path) -> None:
    path = tmp_path / "roster.csv"
    write_roster(path)

    users = list(load_roster_csv(path))

    assert [u.id for u in users] == ["u1", "u2", "u3"]
    assert users[1].email is None
    assert users[2].is_active is False


@pytest.mark.asyncio
async def test_roster_client_follows_pagination() -> None:
    pages = [
        {"users": [{"id": "u1", "username": "ana", "name": "Ana"}], "next_cursor": "1"},
        {"users": [{"id": "u2", "username": "bo"}, {"id": "u9", "is_active": False}]},
    ]
    client = RosterClient("https://users.example.test", token="t", transport=roster_transport(pages))
    try:
        users = await client.fetch_active_users()
    finally:
        await client.close()

    assert [u.id for u in users] == ["u1", "u2"]
    assert users[1].real_name == "bo"


@pytest.mark.asyncio
async def test_roster_client_raises_on_error_status() -> None:
    client = RosterClient(
        "https://users.example.test",
        transport=roster_transport([{"error": "boom"}], status_code=500),
    )
    try:
        with pytest.raises(RosterApiError) as excinfo:
            await client.fetch_active_users()
    finally:
        await client.close()
    assert excinfo.value.status == 500


@pytest.mark.asyncio
async def test_scheduled_run_skips_outside_window(
    service: TaskRolloverService, database: Database
) -> None:
    outcome = await service.run_scheduled_rollover()

    assert outcome["should_run"] is False
    assert database.get_rollover_logs() == []


@pytest.mark.asyncio
async def test_scheduled_run_rolls_every_active_user(
    service: TaskRolloverService,
    settings: Settings,
    database: Database,
    fake_now: FakeNow,
) -> None:
    write_roster(settings.team_roster_path)
    database.assign_task("u1", MON, "A")
    database.assign_task("u2", MON, "B")
    database.assign_task("u3", MON, "C")
    fake_now.set_day(TUE, hour=0, minute=5)

    outcome = await service.run_scheduled_rollover()

    assert outcome["should_run"] is True
    assert outcome["result"]["success_count"] == 2
    assert outcome["result"]["error_count"] == 0
    assert outcome["result"]["status"] == "success"
    assert database.get_record("u1", TUE).assigned_tasks == {"A"}
    assert database.get_record("u2", TUE).assigned_tasks == {"B"}
    assert database.get_record("u3", MON).assigned_tasks == {"C"}

    logs = database.get_rollover_logs()
    assert len(logs) == 1
    assert logs[0].execution_date == TUE


@pytest.mark.asyncio
async def test_scheduled_run_rejects_clock_disagreement(service: TaskRolloverService) -> None:
    with pytest.raises(ClockMismatchError):
        await service.run_scheduled_rollover(force=True, expected_date=MON)


@pytest.mark.asyncio
async def test_scheduled_run_counts_failures(
    service: TaskRolloverService,
    database: Database,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    database.upsert_user(User(id="u1", username="ana", real_name="Ana"))
    database.upsert_user(User(id="u2", username="bo", real_name="Bo"))
    original = service.engine.run_rollover

    def run(user_id: str, target_date: Optional[date] = None) -> RolloverResult:
        if user_id == "u2":
            raise RolloverError(user_id, MON, StoreUnavailableError("database is locked"))
        return original(user_id, target_date)

    monkeypatch.setattr(service.engine, "run_rollover", run)
    outcome = await service.run_scheduled_rollover(force=True)

    assert outcome["result"]["success_count"] == 1
    assert outcome["result"]["error_count"] == 1
    assert outcome["result"]["status"] == "partial_success"
    assert outcome["failed_users"] == ["u2"]


@pytest.mark.asyncio
async def test_scheduled_run_falls_back_to_stored_roster(
    settings: Settings, database: Database, clock: ReferenceClock
) -> None:
    database.upsert_user(User(id="u1", username="ana", real_name="Ana"))
    client = RosterClient(
        "https://users.example.test",
        transport=roster_transport([{}], status_code=503),
    )
    service = TaskRolloverService(settings, database, clock, roster_client=client)
    try:
        outcome = await service.run_scheduled_rollover(force=True)
    finally:
        await client.close()

    assert outcome["result"]["success_count"] == 1


@pytest.mark.asyncio
async def test_run_rollover_retries_transient_errors(
    service: TaskRolloverService,
    database: Database,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    database.assign_task("u1", MON, "A")
    original = service.engine.run_rollover
    calls = []

    def run(user_id: str, target_date: Optional[date] = None) -> RolloverResult:
        calls.append(user_id)
        if len(calls) == 1:
            raise StoreUnavailableError("database is locked")
        return original(user_id, target_date)

    monkeypatch.setattr(service.engine, "run_rollover", run)
    result = await service.run_rollover("u1", TUE)

    assert len(calls) == 2
    assert result.tasks_moved == 1


@pytest.mark.asyncio
async def test_daily_view_runs_rollover_before_reading(
    service: TaskRolloverService, database: Database
) -> None:
    database.assign_task("u1", MON, "A")

    view = await service.get_daily_view("u1", TUE)

    assert view["stale"] is False
    assert view["exists"] is True
    assert view["record"]["assigned_tasks"] == ["A"]
    assert view["rollover"]["tasks_moved"] == 1


@pytest.mark.asyncio
async def test_daily_view_is_stale_when_rollover_fails(
    service: TaskRolloverService,
    database: Database,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    database.assign_task("u1", TUE, "A")

    def broken(user_id: str, target_date: Optional[date] = None) -> RolloverResult:
        raise RolloverError(user_id, MON, StoreUnavailableError("disk I/O error"))

    monkeypatch.setattr(service.engine, "run_rollover", broken)
    view = await service.get_daily_view("u1", TUE)

    assert view["stale"] is True
    assert view["rollover"] is None
    assert view["record"]["assigned_tasks"] == ["A"]


@pytest.mark.asyncio
async def test_daily_view_for_empty_day(service: TaskRolloverService) -> None:
    view = await service.get_daily_view("nobody", TUE)

    assert view["exists"] is False
    assert view["record"]["assigned_tasks"] == []


@pytest.mark.unit
def test_rollover_window_uses_reference_zone(
    service: TaskRolloverService, fake_now: FakeNow
) -> None:
    fake_now.set_day(TUE, hour=0, minute=30)
    assert service.is_rollover_time() is True
    fake_now.set_day(TUE, hour=1)
    assert service.is_rollover_time() is False


@pytest.mark.asyncio
async def test_scheduled_run_survives_audit_log_failure(
    service: TaskRolloverService,
    database: Database,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    database.upsert_user(User(id="u1", username="ana", real_name="Ana"))
    database.assign_task("u1", MON, "A")

    def broken_log(log: object) -> None:
        raise StoreUnavailableError("database is locked")

    monkeypatch.setattr(database, "record_rollover_log", broken_log)
    outcome = await service.run_scheduled_rollover(force=True)

    assert outcome["result"]["success_count"] == 1
    assert outcome["result"]["status"] == "success"
    assert database.get_record("u1", TUE).assigned_tasks == {"A"}


@pytest.mark.unit
def test_remove_task_reports_count(service: TaskRolloverService, database: Database) -> None:
    database.assign_task("u1", MON, "A")
    database.assign_task("u2", TUE, "A")

    assert service.remove_task("A") == {"task_id": "A", "removed": 2}
    assert service.get_record("u1", MON)["assigned_tasks"] == []
