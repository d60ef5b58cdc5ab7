"""Tool call audit log."""

import time
from typing import Any, Protocol

from micromanager.models.audit import ToolCallLog, ToolCallStatus
from micromanager.models.messages import utc_now
from micromanager.utils.logging import get_logger

logger = get_logger(__name__)

TOOL_DISPLAY_INFO: dict[str, tuple[str, str]] = {
    "get_user_context": ("📖 Reading context", "Loading your saved information"),
    "update_user_context": ("✏️ Updating context", "Saving new information"),
    "get_conversation_messages": ("💬 Reading conversation", "Looking back at earlier messages"),
    "list_calendars": ("📅 Listing calendars", "Finding your available calendars"),
    "list_events": ("📅 Checking calendar", "Looking for upcoming events"),
    "create_event": ("✨ Creating event", "Adding new calendar entry"),
    "delete_event": ("🗑️ Deleting event", "Removing calendar entry"),
    "list_task_lists": ("🗂️ Listing task lists", "Finding your task lists"),
    "list_tasks": ("✅ Checking tasks", "Looking at your open tasks"),
    "create_task": ("📝 Creating task", "Adding a new task"),
    "get_weather": ("🌤️ Checking weather", "Looking up the forecast"),
    "get_current_time": ("🕐 Getting current time", "Checking the time"),
}


def tool_display_info(tool_name: str) -> tuple[str, str]:
    """Return the user-facing (title, description) for a tool."""
    return TOOL_DISPLAY_INFO.get(tool_name, (f"🔧 {tool_name}", "Using tool"))


class AuditTransitionError(Exception):
    """Raised when an entry would leave a terminal status."""


class AuditStore(Protocol):
    """Interface for tool call log persistence."""

    async def insert(self, entry: ToolCallLog) -> None:
        """Persist a new pending entry."""
        ...

    async def finish(self, run_id: str, call_id: str, status: ToolCallStatus, error: str | None) -> None:
        """Move a pending entry to a terminal status."""
        ...

    async def list_run(self, run_id: str) -> list[ToolCallLog]:
        """Return a run's entries in creation order."""
        ...


class InMemoryAuditStore:
    """In-memory audit store keyed by ``(run_id, call_id)``."""

    def __init__(self):
        self._entries: dict[tuple[str, str], ToolCallLog] = {}
        self._started: dict[tuple[str, str], float] = {}

    async def insert(self, entry: ToolCallLog) -> None:
        key = (entry.run_id, entry.call_id)
        if key in self._entries:
            raise AuditTransitionError(f"Tool call {entry.call_id} already logged for run {entry.run_id}")
        self._entries[key] = entry.model_copy(deep=True)
        self._started[key] = time.monotonic()

    async def finish(self, run_id: str, call_id: str, status: ToolCallStatus, error: str | None) -> None:
        key = (run_id, call_id)
        entry = self._entries.get(key)
        if entry is None:
            raise KeyError(f"No tool call {call_id} logged for run {run_id}")
        if entry.is_terminal:
            raise AuditTransitionError(f"Tool call {call_id} is already {entry.status}")

        duration_ms = (time.monotonic() - self._started.pop(key, time.monotonic())) * 1000
        self._entries[key] = entry.model_copy(
            update={"status": status, "error": error, "duration_ms": duration_ms, "updated_at": utc_now()}
        )

    async def list_run(self, run_id: str) -> list[ToolCallLog]:
        entries = [entry for (entry_run, _), entry in self._entries.items() if entry_run == run_id]
        return sorted((entry.model_copy(deep=True) for entry in entries), key=lambda entry: entry.created_at)


class AuditLog:
    """Best-effort writer in front of an ``AuditStore``.

    Write failures are logged and swallowed so they never affect the tool call
    being audited. There are no retries.
    """

    def __init__(self, store: AuditStore):
        self.store = store

    async def open(
        self,
        run_id: str,
        call_id: str,
        tool_name: str,
        arguments: dict[str, Any] | str | None,
        user_id: str | None = None,
    ) -> bool:
        """Record a pending invocation. Returns whether the write succeeded."""
        title, description = tool_display_info(tool_name)
        entry = ToolCallLog(
            run_id=run_id,
            call_id=call_id,
            user_id=user_id,
            tool_name=tool_name,
            display_title=title,
            display_description=description,
            arguments=arguments,
        )
        try:
            await self.store.insert(entry)
            return True
        except Exception as e:
            logger.warning(f"Failed to open audit entry {run_id}/{call_id} for {tool_name}: {e}")
            return False

    async def close(self, run_id: str, call_id: str, status: ToolCallStatus, error: str | None = None) -> bool:
        """Record the terminal status. Returns whether the write succeeded."""
        if status == "pending":
            raise ValueError("close() requires a terminal status")
        try:
            await self.store.finish(run_id, call_id, status, error)
            return True
        except Exception as e:
            logger.warning(f"Failed to close audit entry {run_id}/{call_id} as {status}: {e}")
            return False

    async def entries(self, run_id: str) -> list[ToolCallLog]:
        return await self.store.list_run(run_id)
