"""FastAPI application exposing the task rollover REST API."""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .clock import ReferenceClock
from .config import Settings, load_settings
from .db import Database, StoreUnavailableError
from .rollover import RolloverError
from .roster_client import RosterApiError, RosterClient
from .service import ClockMismatchError, TaskRolloverService

logger = logging.getLogger(__name__)


class RolloverRequest(BaseModel):
    user_id: str
    date: Optional[str] = None


class TaskAction(BaseModel):
    user_id: str
    task_id: str
    date: Optional[str] = None


class TaskRemoval(BaseModel):
    task_id: str


class AttendanceUpdate(BaseModel):
    user_id: str
    date: Optional[str] = None
    check_in_time: Optional[datetime] = None
    check_out_time: Optional[datetime] = None
    is_absent: Optional[bool] = None


def build_service(
    settings: Settings,
    database: Optional[Database] = None,
    clock: Optional[ReferenceClock] = None,
    roster_client: Optional[RosterClient] = None,
) -> TaskRolloverService:
    clock = clock or ReferenceClock(settings.tzinfo)
    database = database or Database(settings.database_path, clock)
    if roster_client is None and settings.user_api_url:
        roster_client = RosterClient(settings.user_api_url, settings.user_api_token)
    return TaskRolloverService(settings, database, clock, roster_client)


def create_app(
    settings: Optional[Settings] = None,
    *,
    database: Optional[Database] = None,
    clock: Optional[ReferenceClock] = None,
    roster_client: Optional[RosterClient] = None,
) -> FastAPI:
    settings = settings or load_settings()
    service = build_service(settings, database, clock, roster_client)

    async def verify_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> None:
        if x_api_key != settings.api_key:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid api key")

    def date_dependency(value: Optional[str] = None) -> date:
        if not value:
            return service.clock.today()
        try:
            return datetime.strptime(value, "%Y-%m-%d").date()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid date format. Use YYYY-MM-DD") from exc

    app = FastAPI(title="Task Rollover API", version="1.0.0")

    @app.exception_handler(RolloverError)
    @app.exception_handler(StoreUnavailableError)
    async def store_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.warning("Request %s failed on store error: %s", request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": str(exc), "retry": True},
        )

    @app.exception_handler(ClockMismatchError)
    async def clock_mismatch_handler(request: Request, exc: ClockMismatchError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

    @app.on_event("startup")
    async def startup_event() -> None:  # pragma: no cover - io bound
        try:
            await service.sync_roster()
        except RosterApiError as exc:
            logger.warning("Initial roster sync failed: %s", exc)

    @app.on_event("shutdown")
    async def shutdown_event() -> None:  # pragma: no cover - io bound
        if service.roster_client is not None:
            await service.roster_client.close()

    def get_service() -> TaskRolloverService:
        return service

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok", "reference_date": service.clock.today().isoformat()}

    @app.get("/api/daily-record")
    async def get_daily_record(
        user: str,
        date_param: Optional[str] = None,
        _: None = Depends(verify_api_key),
        svc: TaskRolloverService = Depends(get_service),
    ) -> dict[str, object]:
        day = date_dependency(date_param)
        return await svc.get_daily_view(user, day)

    @app.get("/api/record")
    async def get_record(
        user: str,
        date_param: Optional[str] = None,
        _: None = Depends(verify_api_key),
        svc: TaskRolloverService = Depends(get_service),
    ) -> dict[str, object]:
        record = svc.get_record(user, date_dependency(date_param))
        if record is None:
            raise HTTPException(status_code=404, detail="record not found")
        return record

    @app.get("/api/records")
    async def get_records(
        user: str,
        start: str,
        end: Optional[str] = None,
        _: None = Depends(verify_api_key),
        svc: TaskRolloverService = Depends(get_service),
    ) -> dict[str, object]:
        start_day = date_dependency(start)
        end_day = date_dependency(end)
        if end_day < start_day:
            raise HTTPException(status_code=400, detail="end must not be before start")
        return {
            "start": start_day.isoformat(),
            "end": end_day.isoformat(),
            "records": svc.get_records(user, start_day, end_day),
        }

    @app.post("/api/rollover")
    async def run_rollover(
        payload: RolloverRequest,
        _: None = Depends(verify_api_key),
        svc: TaskRolloverService = Depends(get_service),
    ) -> dict[str, object]:
        day = date_dependency(payload.date)
        result = await svc.run_rollover(payload.user_id, day)
        return result.to_dict()

    @app.post("/api/rollover/scheduled")
    async def run_scheduled_rollover(
        force: bool = False,
        expected_date: Optional[str] = None,
        _: None = Depends(verify_api_key),
        svc: TaskRolloverService = Depends(get_service),
    ) -> dict[str, object]:
        expected = date_dependency(expected_date) if expected_date else None
        return await svc.run_scheduled_rollover(force=force, expected_date=expected)

    @app.get("/api/rollover/cursor")
    async def get_rollover_cursor(
        user: str,
        _: None = Depends(verify_api_key),
        svc: TaskRolloverService = Depends(get_service),
    ) -> dict[str, object]:
        return svc.get_rollover_status(user)

    @app.get("/api/rollover/logs")
    async def get_rollover_logs(
        limit: int = 30,
        _: None = Depends(verify_api_key),
        svc: TaskRolloverService = Depends(get_service),
    ) -> dict[str, object]:
        return {"logs": svc.get_rollover_logs(max(1, min(limit, 365)))}

    @app.post("/api/tasks/assign")
    async def assign_task(
        payload: TaskAction,
        _: None = Depends(verify_api_key),
        svc: TaskRolloverService = Depends(get_service),
    ) -> dict[str, object]:
        return svc.assign_task(payload.user_id, date_dependency(payload.date), payload.task_id)

    @app.post("/api/tasks/complete")
    async def complete_task(
        payload: TaskAction,
        _: None = Depends(verify_api_key),
        svc: TaskRolloverService = Depends(get_service),
    ) -> dict[str, object]:
        return svc.complete_task(payload.user_id, date_dependency(payload.date), payload.task_id)

    @app.post("/api/tasks/uncomplete")
    async def uncomplete_task(
        payload: TaskAction,
        _: None = Depends(verify_api_key),
        svc: TaskRolloverService = Depends(get_service),
    ) -> dict[str, object]:
        return svc.uncomplete_task(payload.user_id, date_dependency(payload.date), payload.task_id)

    @app.post("/api/tasks/remove")
    async def remove_task(
        payload: TaskRemoval,
        _: None = Depends(verify_api_key),
        svc: TaskRolloverService = Depends(get_service),
    ) -> dict[str, object]:
        return svc.remove_task(payload.task_id)

    @app.post("/api/attendance")
    async def update_attendance(
        payload: AttendanceUpdate,
        _: None = Depends(verify_api_key),
        svc: TaskRolloverService = Depends(get_service),
    ) -> dict[str, object]:
        return svc.update_attendance(
            payload.user_id,
            date_dependency(payload.date),
            check_in_time=payload.check_in_time,
            check_out_time=payload.check_out_time,
            is_absent=payload.is_absent,
        )

    return app


__all__ = ["create_app", "build_service"]
