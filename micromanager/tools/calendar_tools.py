"""Google Calendar and Google Tasks tools.

All tools here act with the delegated Google access token carried by the
principal and fail with a readable message when the account is not linked.
"""

from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime, time, timedelta
from typing import Any, TypeVar

import httpx
from pydantic import AwareDatetime, BaseModel, Field, model_validator

from micromanager.auth.scopes import CALENDAR_READ, CALENDAR_WRITE
from micromanager.clients.google import GoogleApiClient, GoogleApiError
from micromanager.tools.base import EmptyInput, ToolContext, ToolDefinition, ToolExecutionError

GoogleClientFactory = Callable[[str], GoogleApiClient]

T = TypeVar("T")


class ListEventsInput(BaseModel):
    """Input schema for listing calendar events."""

    calendar_id: str = Field("primary", description="Calendar to read, 'primary' for the main calendar")
    days: int = Field(7, ge=1, le=31, description="Number of days ahead to include, starting today")
    max_results: int = Field(25, ge=1, le=250, description="Maximum number of events to return")


class CreateEventInput(BaseModel):
    """Input schema for creating a calendar event."""

    summary: str = Field(..., min_length=1, max_length=200, description="Event title")
    start: AwareDatetime = Field(..., description="Start time, ISO 8601 with timezone offset")
    end: AwareDatetime = Field(..., description="End time, ISO 8601 with timezone offset")
    description: str | None = Field(None, max_length=2000)
    location: str | None = Field(None, max_length=200)
    calendar_id: str = Field("primary")

    @model_validator(mode="after")
    def validate_time_range(self) -> "CreateEventInput":
        """End must come after start."""
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self


class DeleteEventInput(BaseModel):
    """Input schema for deleting a calendar event."""

    event_id: str = Field(..., min_length=1, description="Id of the event, as returned by list_events")
    calendar_id: str = Field("primary")


class ListTasksInput(BaseModel):
    """Input schema for listing tasks."""

    task_list_id: str = Field("@default", description="Task list id, '@default' for the default list")
    show_completed: bool = Field(False, description="Include completed tasks")


class CreateTaskInput(BaseModel):
    """Input schema for creating a task."""

    title: str = Field(..., min_length=1, max_length=200)
    notes: str | None = Field(None, max_length=2000)
    due: date | None = Field(None, description="Due date (YYYY-MM-DD)")
    task_list_id: str = Field("@default")


async def _call_google(call: Callable[[], Awaitable[T]]) -> T:
    try:
        return await call()
    except GoogleApiError as e:
        raise ToolExecutionError(str(e)) from e
    except httpx.TimeoutException as e:
        raise ToolExecutionError("Google API request timed out") from e
    except httpx.HTTPError as e:
        raise ToolExecutionError(f"Google API request failed: {e}") from e


def _event_time(value: dict[str, Any] | None) -> str:
    if not value:
        return "?"
    return value.get("dateTime") or value.get("date") or "?"


def _format_event(event: dict[str, Any]) -> str:
    start, end = _event_time(event.get("start")), _event_time(event.get("end"))
    line = f"- {event.get('summary', 'Untitled event')} ({start} → {end})"
    if event.get("location"):
        line += f" @ {event['location']}"
    return f"{line} [id: {event.get('id', '?')}]"


def create_calendar_tools(client_factory: GoogleClientFactory = GoogleApiClient) -> list[ToolDefinition]:
    """Build the calendar tool set around a Google client factory."""

    async def list_calendars_handler(params: EmptyInput, context: ToolContext) -> str:
        client = client_factory(context.require_google_token())
        calendars = await _call_google(client.list_calendars)
        if not calendars:
            return "No calendars found."
        return "\n".join(
            f"- {calendar.get('summary', 'Untitled calendar')} [id: {calendar.get('id')}]"
            + (" (primary)" if calendar.get("primary") else "")
            for calendar in calendars
        )

    async def list_events_handler(params: ListEventsInput, context: ToolContext) -> str:
        client = client_factory(context.require_google_token())
        start = datetime.combine(datetime.now(UTC).date(), time.min, tzinfo=UTC)
        end = start + timedelta(days=params.days)
        events = await _call_google(
            lambda: client.list_events(params.calendar_id, start, end, params.max_results)
        )
        if not events:
            return f"No events in the next {params.days} days."
        return "\n".join(_format_event(event) for event in events)

    async def create_event_handler(params: CreateEventInput, context: ToolContext) -> str:
        client = client_factory(context.require_google_token())
        body: dict[str, Any] = {
            "summary": params.summary,
            "start": {"dateTime": params.start.isoformat()},
            "end": {"dateTime": params.end.isoformat()},
        }
        if params.description:
            body["description"] = params.description
        if params.location:
            body["location"] = params.location
        event = await _call_google(lambda: client.create_event(params.calendar_id, body))
        return f"Created event:\n{_format_event(event)}"

    async def delete_event_handler(params: DeleteEventInput, context: ToolContext) -> str:
        client = client_factory(context.require_google_token())
        await _call_google(lambda: client.delete_event(params.calendar_id, params.event_id))
        return f"Deleted event {params.event_id}."

    async def list_task_lists_handler(params: EmptyInput, context: ToolContext) -> str:
        client = client_factory(context.require_google_token())
        task_lists = await _call_google(client.list_task_lists)
        if not task_lists:
            return "No task lists found."
        return "\n".join(f"- {item.get('title', 'Untitled task list')} [id: {item.get('id')}]" for item in task_lists)

    async def list_tasks_handler(params: ListTasksInput, context: ToolContext) -> str:
        client = client_factory(context.require_google_token())
        tasks = await _call_google(lambda: client.list_tasks(params.task_list_id, params.show_completed))
        if not tasks:
            return "No tasks."
        lines = []
        for task in tasks:
            line = f"- [{'x' if task.get('status') == 'completed' else ' '}] {task.get('title', 'Untitled task')}"
            if task.get("due"):
                line += f" (due {task['due'][:10]})"
            lines.append(f"{line} [id: {task.get('id')}]")
        return "\n".join(lines)

    async def create_task_handler(params: CreateTaskInput, context: ToolContext) -> str:
        client = client_factory(context.require_google_token())
        body: dict[str, Any] = {"title": params.title}
        if params.notes:
            body["notes"] = params.notes
        if params.due:
            # Tasks API only keeps the date part of an RFC 3339 timestamp
            body["due"] = f"{params.due.isoformat()}T00:00:00.000Z"
        task = await _call_google(lambda: client.create_task(params.task_list_id, body))
        return f"Created task '{task.get('title', params.title)}' [id: {task.get('id')}]"

    read = frozenset({CALENDAR_READ})
    write = frozenset({CALENDAR_WRITE})
    return [
        ToolDefinition("list_calendars", "List the user's Google calendars.", EmptyInput, list_calendars_handler, read),
        ToolDefinition(
            "list_events", "List upcoming events from a Google calendar.", ListEventsInput, list_events_handler, read
        ),
        ToolDefinition(
            "create_event", "Create a Google Calendar event.", CreateEventInput, create_event_handler, write
        ),
        ToolDefinition(
            "delete_event", "Delete a Google Calendar event.", DeleteEventInput, delete_event_handler, write
        ),
        ToolDefinition(
            "list_task_lists", "List the user's Google Tasks lists.", EmptyInput, list_task_lists_handler, read
        ),
        ToolDefinition("list_tasks", "List tasks in a Google Tasks list.", ListTasksInput, list_tasks_handler, read),
        ToolDefinition("create_task", "Create a task in Google Tasks.", CreateTaskInput, create_task_handler, write),
    ]
