"""Client for the remote reminder service.

The remote service is the authority for reminders and their occurrence history.
Every call is bounded by a timeout, and every failure is translated into one of the
error kinds in ``carecue.errors`` so callers never see raw httpx exceptions.
"""

import logging
from datetime import datetime
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from carecue.config import get_settings
from carecue.errors import (
    NetworkUnavailable,
    RequestTimedOut,
    ServerError,
    error_for_status,
)
from carecue.schemas.occurrence import Occurrence, OccurrenceCreate, OccurrenceStatus
from carecue.schemas.reminder import Reminder, ReminderCreate, ReminderUpdate

logger = logging.getLogger(__name__)


class RemoteReminderService:
    """Async REST client for reminders, medication history and stats."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = get_settings()
        self.base_url = (base_url or self.settings.remote_base_url).rstrip("/")
        self.token = token if token is not None else self.settings.api_token
        self.timeout = timeout or self.settings.request_timeout_seconds
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(self, method: str, path: str, json: Any = None) -> Any:
        """Send one request and return the decoded JSON body (None when empty)."""
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(method, path, json=json, headers=self._headers())
        except httpx.TimeoutException as e:
            logger.warning(f"{method} {path} timed out after {self.timeout}s")
            raise RequestTimedOut(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise NetworkUnavailable(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            error = error_for_status(response.status_code, _decode(response))
            logger.info(f"{method} {path} -> {response.status_code}: {error.message}")
            raise error

        if response.status_code == 204 or not response.content:
            return None
        body = _decode(response)
        if isinstance(body, str):
            raise ServerError(f"{method} {path} returned a non-JSON body")
        return body

    # Reminders

    async def list_reminders(self) -> list[Reminder]:
        body = await self._request("GET", "/reminders")
        return _parse_list(_unwrap(body), Reminder, "reminder")

    async def create_reminder(self, reminder: ReminderCreate) -> Reminder:
        body = await self._request("POST", "/reminders", json=reminder.model_dump(mode="json"))
        return _parse_one(_unwrap(body), Reminder)

    async def update_reminder(self, reminder_id: str, patch: ReminderUpdate) -> Reminder:
        body = await self._request(
            "PUT",
            f"/reminders/{reminder_id}",
            json=patch.model_dump(mode="json", exclude_unset=True),
        )
        return _parse_one(_unwrap(body), Reminder)

    async def delete_reminder(self, reminder_id: str) -> None:
        await self._request("DELETE", f"/reminders/{reminder_id}")

    async def snooze(self, reminder_id: str, minutes: int) -> Reminder:
        body = await self._request(
            "POST", f"/reminders/{reminder_id}/snooze", json={"minutes": minutes}
        )
        return _parse_one(_unwrap(body), Reminder)

    async def mark_missed(self, reminder_id: str) -> Reminder:
        body = await self._request("POST", f"/reminders/{reminder_id}/missed", json={})
        return _parse_one(_unwrap(body), Reminder)

    # Occurrence history

    async def add_history(
        self, reminder_id: str, status: OccurrenceStatus, time: datetime
    ) -> Occurrence:
        """Record an occurrence. The server answers 409 for a duplicate."""
        entry = OccurrenceCreate(status=status, time=time)
        body = await self._request(
            "POST", f"/medications/{reminder_id}/history", json=entry.model_dump(mode="json")
        )
        data = _unwrap(body)
        if isinstance(data, dict):
            data.setdefault("reminder_id", reminder_id)
        return _parse_one(data, Occurrence)

    async def list_history(self, reminder_id: str) -> list[Occurrence]:
        body = await self._request("GET", f"/medications/{reminder_id}/history")
        items = _unwrap(body)
        if isinstance(items, list):
            for item in items:
                if isinstance(item, dict):
                    item.setdefault("reminder_id", reminder_id)
        return _parse_list(items, Occurrence, "history entry")

    # Reporting

    async def stats(self) -> dict[str, Any]:
        body = await self._request("GET", "/medications/stats")
        return body if isinstance(body, dict) else {}

    async def upcoming(self) -> list[dict[str, Any]]:
        body = _unwrap(await self._request("GET", "/medications/upcoming"))
        return body if isinstance(body, list) else []


def _decode(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _unwrap(body: Any) -> Any:
    """Some endpoints wrap their payload as ``{"data": ...}``."""
    if isinstance(body, dict) and "data" in body and len(body) <= 2:
        return body["data"]
    return body


def _parse_one(data: Any, model: type) -> Any:
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ServerError(f"Unexpected {model.__name__} payload from server") from e


def _parse_list(items: Any, model: type, what: str) -> list:
    if not isinstance(items, list):
        raise ServerError(f"Expected a list of {what}s from server")
    parsed = []
    for item in items:
        try:
            parsed.append(model.model_validate(item))
        except PydanticValidationError as e:
            logger.warning(f"Skipping malformed {what} from server: {e.error_count()} errors")
    return parsed
