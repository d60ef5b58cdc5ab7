"""Google Calendar and Google Tasks REST client."""

from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from micromanager.utils.logging import get_logger

logger = get_logger(__name__)

CALENDAR_API = "https://www.googleapis.com/calendar/v3"
TASKS_API = "https://tasks.googleapis.com/tasks/v1"


class GoogleApiError(Exception):
    """Non-success response from a Google API."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"Google API error {status_code}: {message}")
        self.status_code = status_code


class GoogleApiClient:
    """Thin async wrapper over the Calendar v3 and Tasks v1 REST endpoints.

    One instance is bound to one user's delegated access token.
    """

    def __init__(self, access_token: str, http_client: httpx.AsyncClient | None = None, timeout: float = 10.0):
        self.access_token = access_token
        self.http_client = http_client
        self.timeout = timeout

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        if self.http_client is not None:
            response = await self.http_client.request(method, url, headers=headers, **kwargs)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, headers=headers, **kwargs)

        if response.status_code >= 400:
            message = response.text
            try:
                message = response.json().get("error", {}).get("message", message)
            except ValueError:
                pass
            raise GoogleApiError(response.status_code, message)

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    # Calendar
    async def list_calendars(self) -> list[dict[str, Any]]:
        data = await self._request("GET", f"{CALENDAR_API}/users/me/calendarList")
        return data.get("items", [])

    async def list_events(
        self, calendar_id: str, time_min: datetime, time_max: datetime, max_results: int
    ) -> list[dict[str, Any]]:
        params = {
            "timeMin": time_min.isoformat(),
            "timeMax": time_max.isoformat(),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": max_results,
        }
        data = await self._request("GET", f"{CALENDAR_API}/calendars/{_segment(calendar_id)}/events", params=params)
        return data.get("items", [])

    async def create_event(self, calendar_id: str, event: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", f"{CALENDAR_API}/calendars/{_segment(calendar_id)}/events", json=event)

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        await self._request("DELETE", f"{CALENDAR_API}/calendars/{_segment(calendar_id)}/events/{_segment(event_id)}")

    # Tasks
    async def list_task_lists(self) -> list[dict[str, Any]]:
        task_lists: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"maxResults": 100}
            if page_token:
                params["pageToken"] = page_token
            data = await self._request("GET", f"{TASKS_API}/users/@me/lists", params=params)
            task_lists.extend(data.get("items", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                return task_lists

    async def list_tasks(self, task_list_id: str, show_completed: bool) -> list[dict[str, Any]]:
        params = {"showCompleted": str(show_completed).lower(), "maxResults": 100}
        data = await self._request("GET", f"{TASKS_API}/lists/{_segment(task_list_id)}/tasks", params=params)
        return data.get("items", [])

    async def create_task(self, task_list_id: str, task: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", f"{TASKS_API}/lists/{_segment(task_list_id)}/tasks", json=task)


def _segment(value: str) -> str:
    """Encode an identifier as a single URL path segment."""
    return quote(value, safe="")
