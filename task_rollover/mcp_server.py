"""MCP server exposing manual rollover and inspection tools."""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from mcp.server.fastmcp import FastMCP

from .api import build_service
from .config import load_settings

mcp = FastMCP("task-rollover")

_settings = load_settings()
_service = build_service(_settings)


def _ensure_date(day_str: Optional[str] = None) -> date:
    if not day_str:
        return _service.clock.today()
    return datetime.strptime(day_str, "%Y-%m-%d").date()


@mcp.tool()
async def run_rollover(user_id: str, date: Optional[str] = None) -> dict:
    """Carry a user's unfinished tasks forward up to the given date (default today)."""

    result = await _service.run_rollover(user_id, _ensure_date(date))
    return result.to_dict()


@mcp.tool()
async def get_daily_record(user_id: str, date: Optional[str] = None) -> dict:
    """Return a user's daily work record after bringing rollover up to date."""

    return await _service.get_daily_view(user_id, _ensure_date(date))


@mcp.tool()
async def get_rollover_status(user_id: Optional[str] = None) -> dict:
    """Return the rollover cursor for a user and the most recent scheduled runs."""

    status: dict = {"logs": _service.get_rollover_logs(10)}
    if user_id:
        status.update(_service.get_rollover_status(user_id))
    return status


__all__ = [
    "mcp",
    "run_rollover",
    "get_daily_record",
    "get_rollover_status",
]
