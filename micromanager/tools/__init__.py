"""Tools available to the assistant and to MCP-style callers."""

from micromanager.clients.google import GoogleApiClient
from micromanager.services.transcript import TranscriptStore
from micromanager.services.user_context import ContextStore
from micromanager.tools.base import ToolContext, ToolDefinition, ToolResult
from micromanager.tools.calendar_tools import GoogleClientFactory, create_calendar_tools
from micromanager.tools.context_tools import (
    create_get_conversation_messages_tool,
    create_get_user_context_tool,
    create_update_user_context_tool,
)
from micromanager.tools.dispatcher import ToolDispatcher
from micromanager.tools.registry import ToolsRegistry
from micromanager.tools.utility_tools import create_get_current_time_tool, create_get_weather_tool


def build_default_registry(
    context_store: ContextStore,
    transcript_store: TranscriptStore,
    google_client_factory: GoogleClientFactory = GoogleApiClient,
) -> ToolsRegistry:
    """Registry with the full default tool set."""
    return ToolsRegistry(
        [
            create_get_user_context_tool(context_store),
            create_update_user_context_tool(context_store),
            create_get_conversation_messages_tool(transcript_store),
            *create_calendar_tools(google_client_factory),
            create_get_weather_tool(),
            create_get_current_time_tool(),
        ]
    )


__all__ = [
    "ToolContext",
    "ToolDefinition",
    "ToolDispatcher",
    "ToolResult",
    "ToolsRegistry",
    "build_default_registry",
]
