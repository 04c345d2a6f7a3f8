"""HTTP client for the user-management API that owns the team roster."""

from __future__ import annotations

import asyncio
import csv
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from .models import User


class RosterApiError(RuntimeError):
    """Raised when the user-management API returns an error response."""

    def __init__(self, path: str, error: str, status: Optional[int] = None) -> None:
        super().__init__(f"User API error for {path}: {error}")
        self.path = path
        self.error = error
        self.status = status


class RosterClient:
    """Async wrapper around the ``/users`` endpoint of the user-management API."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch_active_users(self, limit: int = 200) -> list[User]:
        """Return every active user, following ``next_cursor`` pagination."""

        users: list[User] = []
        cursor: Optional[str] = None
        while True:
            params: Dict[str, Any] = {"is_active": "true", "limit": limit}
            if cursor:
                params["cursor"] = cursor
            try:
                response = await self._client.get("/users", params=params)
            except httpx.HTTPError as exc:
                raise RosterApiError("/users", str(exc)) from exc
            if response.status_code >= 400:
                raise RosterApiError("/users", response.text or "http_error", response.status_code)
            try:
                data = response.json()
            except ValueError as exc:
                raise RosterApiError("/users", "invalid_json", response.status_code) from exc
            if not isinstance(data, dict) or not isinstance(data.get("users"), list):
                raise RosterApiError("/users", "malformed_payload", response.status_code)

            for member in data["users"]:
                if not member.get("id") or member.get("is_active") is False:
                    continue
                users.append(
                    User(
                        id=str(member["id"]),
                        username=member.get("username") or str(member["id"]),
                        real_name=member.get("name") or member.get("username") or str(member["id"]),
                        email=member.get("email"),
                    )
                )

            cursor = data.get("next_cursor")
            if not cursor:
                break
            await asyncio.sleep(0.2)
        return users


def load_roster_csv(path: Path) -> Iterable[User]:
    with path.open(newline="", encoding="utf-8") as handle:
        reader = csv.DictReader(handle)
        for row in reader:
            if not row.get("user_id"):
                continue
            yield User(
                id=row["user_id"],
                username=row.get("username") or row["user_id"],
                real_name=row.get("real_name") or row["user_id"],
                email=row.get("email") or None,
                is_active=(row.get("is_active") or "true").strip().lower() not in {"false", "0", "no"},
            )


__all__ = ["RosterClient", "RosterApiError", "load_roster_csv"]
