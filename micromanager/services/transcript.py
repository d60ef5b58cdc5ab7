"""Conversation transcript store interface and implementations."""

from typing import Any, Protocol

from micromanager.models.messages import ConversationMessage, utc_now
from micromanager.utils.ids import new_id


class TranscriptStore(Protocol):
    """Interface for transcript persistence.

    Every write addresses a single message by id; there is no upsert.
    """

    async def insert(self, message: ConversationMessage) -> str:
        """Persist a new message and return its id."""
        ...

    async def update(self, message_id: str, fields: dict[str, Any]) -> None:
        """Overwrite the given top-level fields of one message."""
        ...

    async def list_recent(self, user_id: str, limit: int) -> list[ConversationMessage]:
        """Return up to ``limit`` most recent messages, oldest first."""
        ...

    async def delete_conversation(self, user_id: str) -> int:
        """Remove all of a user's messages and return how many were removed."""
        ...


class InMemoryTranscriptStore:
    """In-memory transcript store.

    Messages are kept per user in insertion order, which is also creation order.
    """

    UPDATABLE_FIELDS = frozenset({"content", "type", "metadata", "tool_call_id", "source"})

    def __init__(self):
        self._messages: dict[str, ConversationMessage] = {}
        self._by_user: dict[str, list[str]] = {}

    async def insert(self, message: ConversationMessage) -> str:
        message_id = message.id or new_id()
        stored = message.model_copy(deep=True, update={"id": message_id})
        self._messages[message_id] = stored
        self._by_user.setdefault(stored.user_id, []).append(message_id)
        return message_id

    async def update(self, message_id: str, fields: dict[str, Any]) -> None:
        existing = self._messages.get(message_id)
        if existing is None:
            raise KeyError(f"Message {message_id} not found")

        unknown = set(fields) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update message fields: {sorted(unknown)}")

        changes = {key: (dict(value) if key == "metadata" else value) for key, value in fields.items()}
        changes["updated_at"] = utc_now()
        self._messages[message_id] = existing.model_copy(update=changes)

    async def list_recent(self, user_id: str, limit: int) -> list[ConversationMessage]:
        ids = self._by_user.get(user_id, [])
        recent = ids[-limit:] if limit > 0 else []
        return [self._messages[message_id].model_copy(deep=True) for message_id in recent]

    async def delete_conversation(self, user_id: str) -> int:
        ids = self._by_user.pop(user_id, [])
        for message_id in ids:
            self._messages.pop(message_id, None)
        return len(ids)
