"""Conversation transcript models."""

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

MessageRole = Literal["user", "assistant", "system", "tool"]
MessageType = Literal["text", "tool", "state", "audio"]
MessageSource = Literal["web-user", "telegram-user", "micromanager", "realtime-agent"]


def utc_now() -> datetime:
    return datetime.now(UTC)


class ConversationMessage(BaseModel):
    """One turn in a user's transcript.

    Tool-result messages (``type="tool"``) carry the id of the assistant tool call
    they answer in ``tool_call_id``. Assistant ``state`` records carry the requested
    calls under ``metadata["toolCalls"]``.
    """

    id: str | None = None
    user_id: str
    role: MessageRole
    content: str = ""
    type: MessageType = "text"
    source: MessageSource | None = None
    tool_call_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def streaming(self) -> bool:
        """Whether the message is still being generated."""
        return bool(self.metadata.get("streaming", False))

    @property
    def is_error(self) -> bool:
        return bool(self.metadata.get("error"))
