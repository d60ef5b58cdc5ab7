"""User context and conversation history tools."""

import json
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from micromanager.auth.scopes import USER_CONTEXT_READ, USER_CONTEXT_WRITE
from micromanager.models.context import ContextUpdate
from micromanager.services.transcript import TranscriptStore
from micromanager.services.user_context import ContextStore, format_context_for_prompt
from micromanager.tools.base import ToolContext, ToolDefinition


class GetUserContextInput(BaseModel):
    """Input schema for reading the user context."""

    format: Literal["json", "text"] = Field(
        "json",
        description="'json' returns the raw document, 'text' a readable summary",
    )


class ContextEntryInput(BaseModel):
    """A single context entry to write."""

    path: str = Field(..., min_length=1, description="Key of the entry, e.g. '/work/current_project'")
    value: str = Field(..., description="New value for the entry")


class UpdateUserContextInput(BaseModel):
    """Input schema for updating the user context."""

    model_config = ConfigDict(populate_by_name=True)

    context_updates: list[ContextEntryInput] | None = Field(
        None, alias="contextUpdates", description="Entries to create or overwrite"
    )
    context_deletes: list[str] | None = Field(None, alias="contextDeletes", description="Entry paths to remove")


class GetConversationMessagesInput(BaseModel):
    """Input schema for fetching older conversation messages."""

    limit: int = Field(20, ge=1, le=50, description="How many recent messages to return")


def create_get_user_context_tool(context_store: ContextStore) -> ToolDefinition:
    async def get_user_context_handler(params: GetUserContextInput, context: ToolContext) -> str:
        document = await context_store.read(context.user_id)
        if params.format == "text":
            return format_context_for_prompt(document)
        return json.dumps(document.data, indent=2, ensure_ascii=False, default=str)

    return ToolDefinition(
        name="get_user_context",
        description="Get the user's private context document.",
        input_schema_class=GetUserContextInput,
        handler=get_user_context_handler,
        required_scopes=frozenset({USER_CONTEXT_READ}),
    )


def create_update_user_context_tool(context_store: ContextStore) -> ToolDefinition:
    async def update_user_context_handler(params: UpdateUserContextInput, context: ToolContext) -> str:
        if not params.context_updates and not params.context_deletes:
            return "No updates or deletes provided"

        updates = [ContextUpdate(path=entry.path, value=entry.value) for entry in params.context_updates or []]
        updates.extend(ContextUpdate(path=path, value=None) for path in params.context_deletes or [])

        document = await context_store.apply_updates(context.user_id, updates)
        return json.dumps(document.data, indent=2, ensure_ascii=False, default=str)

    return ToolDefinition(
        name="update_user_context",
        description=(
            "Create, overwrite or delete entries in the user's private context document. "
            "Keep entries concise and add details you learn from the user or from other tools."
        ),
        input_schema_class=UpdateUserContextInput,
        handler=update_user_context_handler,
        required_scopes=frozenset({USER_CONTEXT_WRITE}),
    )


def create_get_conversation_messages_tool(transcript_store: TranscriptStore) -> ToolDefinition:
    async def get_conversation_messages_handler(params: GetConversationMessagesInput, context: ToolContext) -> str:
        messages = await transcript_store.list_recent(context.user_id, params.limit)
        visible = [
            {"role": message.role, "content": message.content, "createdAt": message.created_at.isoformat()}
            for message in messages
            if message.type == "text" and message.role in ("user", "assistant") and not message.streaming
        ]
        if not visible:
            return "No earlier messages."
        return json.dumps(visible, indent=2, ensure_ascii=False)

    return ToolDefinition(
        name="get_conversation_messages",
        description="Fetch earlier messages of the conversation when more history is needed.",
        input_schema_class=GetConversationMessagesInput,
        handler=get_conversation_messages_handler,
        required_scopes=frozenset({USER_CONTEXT_READ}),
    )
