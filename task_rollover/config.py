"""Configuration helpers for the task rollover service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv


@dataclass(slots=True)
class Settings:
    """Runtime configuration values loaded from environment variables."""

    api_key: str
    database_path: Path
    timezone: str = "Asia/Kolkata"
    rollover_hour: int = 0
    max_lookback_days: int = 30
    rollover_max_attempts: int = 3
    rollover_retry_backoff: float = 0.5
    team_roster_path: Optional[Path] = None
    user_api_url: Optional[str] = None
    user_api_token: Optional[str] = None
    log_level: str = "INFO"

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def load_settings(env_file: str | None = None) -> Settings:
    """Load settings from the environment, optionally from a specific file."""

    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    db_path = Path(os.getenv("DATABASE_PATH", "task_rollover.db")).expanduser()
    roster_path = Path(
        os.getenv("TEAM_ROSTER_PATH", "team_roster.csv")
    ).expanduser()

    api_key = os.getenv("API_KEY")
    if not api_key:
        raise RuntimeError("API_KEY must be configured")

    timezone_name = os.getenv("ROLLOVER_TIMEZONE", "Asia/Kolkata")
    try:
        ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise RuntimeError(f"ROLLOVER_TIMEZONE is not a known zone: {timezone_name}") from exc

    rollover_hour = int(os.getenv("ROLLOVER_HOUR", "0"))
    if not 0 <= rollover_hour <= 23:
        raise RuntimeError("ROLLOVER_HOUR must be between 0 and 23")

    max_lookback_days = int(os.getenv("MAX_LOOKBACK_DAYS", "30"))
    if max_lookback_days < 1:
        raise RuntimeError("MAX_LOOKBACK_DAYS must be at least 1")

    return Settings(
        api_key=api_key,
        database_path=db_path,
        timezone=timezone_name,
        rollover_hour=rollover_hour,
        max_lookback_days=max_lookback_days,
        rollover_max_attempts=max(1, int(os.getenv("ROLLOVER_MAX_ATTEMPTS", "3"))),
        rollover_retry_backoff=float(os.getenv("ROLLOVER_RETRY_BACKOFF", "0.5")),
        team_roster_path=roster_path,
        user_api_url=os.getenv("USER_API_URL") or None,
        user_api_token=os.getenv("USER_API_TOKEN") or None,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )


__all__ = ["Settings", "load_settings"]
