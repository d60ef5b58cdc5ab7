"""Tool call audit log models."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from micromanager.models.messages import utc_now

ToolCallStatus = Literal["pending", "success", "error"]


class ToolCallLog(BaseModel):
    """One tool invocation attempt, keyed by ``(run_id, call_id)``."""

    run_id: str
    call_id: str
    user_id: str | None = None
    tool_name: str
    display_title: str
    display_description: str | None = None
    arguments: dict[str, Any] | str | None = None
    status: ToolCallStatus = "pending"
    error: str | None = None
    duration_ms: float | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status != "pending"
