"""API request and response models."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from micromanager.models.messages import ConversationMessage

RunOutcome = Literal["completed", "iteration_limit", "protocol_error", "error"]


class ConversationRequest(BaseModel):
    """Request model for the conversation endpoint."""

    message: str = Field(..., min_length=1)


class ConversationResponse(BaseModel):
    """Response model for the conversation endpoint."""

    message_id: str | None
    content: str
    run_id: str
    outcome: RunOutcome
    passes: int


class ConversationHistoryResponse(BaseModel):
    """Recent transcript for the authenticated user."""

    messages: list[ConversationMessage]


class ToolCallBody(BaseModel):
    """Request model for a direct tool invocation."""

    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    call_id: str | None = None


class ToolCallResponse(BaseModel):
    """Structured tool result returned on the tool-calling channel."""

    content: str
    is_error: bool = False
    kind: Literal["ok", "unauthorized", "forbidden", "invalid_arguments", "failed", "unknown_tool"] = "ok"
    run_id: str | None = None
    call_id: str | None = None


class ToolDescription(BaseModel):
    """Tool listing entry."""

    name: str
    description: str
    required_scopes: list[str]
    input_schema: dict[str, Any]


class TokenRequest(BaseModel):
    """Request model for token issuance."""

    user_id: str
    google_access_token: str | None = None
    scopes: list[str] | None = None
    run_id: str | None = None


class TokenResponse(BaseModel):
    """Issued bearer token."""

    token: str
    expires_in: int


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    timestamp: datetime
    version: str


class ConversationResetResponse(BaseModel):
    """Result of a bulk conversation reset."""

    deleted: int


class GoogleLinkRequest(BaseModel):
    """Delegated Google OAuth tokens for the authenticated user."""

    access_token: str = Field(..., min_length=1)
    refresh_token: str | None = None
    expires_in: int = Field(3600, ge=1, description="Seconds until the access token expires")


class TelegramLinkRequest(BaseModel):
    """Telegram chat that receives the user's notifications."""

    chat_id: int


class LinkResponse(BaseModel):
    """Result of linking or unlinking an external account."""

    user_id: str
    provider: Literal["google", "telegram"]
    linked: bool
