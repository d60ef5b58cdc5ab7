"""User context document store."""

import json
from typing import Protocol

from micromanager.models.context import ContextUpdate, UserContextDocument
from micromanager.models.messages import utc_now


class ContextStore(Protocol):
    """Interface for the per-user context document."""

    async def read(self, user_id: str) -> UserContextDocument:
        """Return the user's document, creating an empty one on first access."""
        ...

    async def apply_updates(self, user_id: str, updates: list[ContextUpdate]) -> UserContextDocument:
        """Set each path to its value (``None`` clears it) and return the new document."""
        ...


class InMemoryContextStore:
    """In-memory context store keyed by user id."""

    def __init__(self):
        self._documents: dict[str, UserContextDocument] = {}

    async def read(self, user_id: str) -> UserContextDocument:
        document = self._documents.get(user_id)
        if document is None:
            document = UserContextDocument(user_id=user_id)
            self._documents[user_id] = document
        return document.model_copy(deep=True)

    async def apply_updates(self, user_id: str, updates: list[ContextUpdate]) -> UserContextDocument:
        current = await self.read(user_id)
        data = dict(current.data)
        for update in updates:
            data[update.path] = update.value
        document = current.model_copy(update={"data": data, "updated_at": utc_now()})
        self._documents[user_id] = document
        return document.model_copy(deep=True)


def format_context_for_prompt(document: UserContextDocument) -> str:
    """Render the context document for inclusion in the system prompt."""
    entries = {path: value for path, value in document.data.items() if value is not None}
    if not entries:
        return "(no saved context yet)"
    return json.dumps(entries, indent=2, ensure_ascii=False, default=str)
