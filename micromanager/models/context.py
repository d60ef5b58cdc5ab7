"""User context document models."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from micromanager.models.messages import utc_now


class UserContextDocument(BaseModel):
    """Per-user private context document, a flat mapping of path to value."""

    user_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ContextUpdate(BaseModel):
    """Set ``value`` at ``path``; a ``None`` value clears the entry."""

    path: str = Field(..., min_length=1)
    value: Any = None
