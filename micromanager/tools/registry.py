"""Tools registry for managing agent tools."""

import json
from collections.abc import Iterable
from types import MappingProxyType
from typing import Any

from micromanager.auth.scopes import ScopeAuthority
from micromanager.models.llm import LLMToolSchema
from micromanager.tools.base import (
    ToolArgumentsError,
    ToolContext,
    ToolDefinition,
    ToolExecutionError,
    ToolResult,
    UnknownToolError,
)
from micromanager.utils.logging import get_logger

logger = get_logger(__name__)


class ToolsRegistry:
    """Registry of tool definitions, fixed at construction."""

    def __init__(self, tools: Iterable[ToolDefinition]):
        """Initialize the registry with the full tool set."""
        registered: dict[str, ToolDefinition] = {}
        for tool in tools:
            if tool.name in registered:
                raise ValueError(f"Duplicate tool name: {tool.name}")
            registered[tool.name] = tool
        self._tools = MappingProxyType(registered)

    def get_tool(self, name: str) -> ToolDefinition:
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(name)
        return tool

    def get_tool_names(self) -> list[str]:
        """Get list of all registered tool names."""
        return list(self._tools.keys())

    def tools(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def get_llm_tools(self) -> list[LLMToolSchema]:
        """Tool schemas in the shape sent to the generation provider."""
        return [
            LLMToolSchema(name=tool.name, description=tool.full_description, input_schema=tool.get_json_schema())
            for tool in self._tools.values()
        ]

    def scope_authority(self) -> ScopeAuthority:
        """Scope requirement map derived from the registered tools."""
        return ScopeAuthority({tool.name: tool.required_scopes for tool in self._tools.values()})

    async def execute(self, name: str, raw_arguments: dict[str, Any] | str, context: ToolContext) -> ToolResult:
        """Validate arguments and run a tool.

        Never raises for tool-level problems: unknown tools, bad arguments and
        executor failures come back as error results the conversation can carry.
        """
        try:
            tool = self.get_tool(name)
        except UnknownToolError:
            logger.error(f"Unknown tool requested: {name}")
            return ToolResult.error(f"Error: Unknown tool {name}", "unknown_tool")

        try:
            arguments = _decode_arguments(raw_arguments)
            parsed = tool.parse_input(arguments)
        except ToolArgumentsError as e:
            logger.info(f"Rejected arguments for {name}: {e}")
            return ToolResult.error(f"Invalid arguments for {name}: {e}", "invalid_arguments")
        except Exception as e:
            # validators can raise outside pydantic's error wrapping
            logger.warning(f"Argument validation for {name} raised {type(e).__name__}: {e}")
            return ToolResult.error(f"Invalid arguments for {name}: {e}", "invalid_arguments")

        try:
            output = await tool.handler(parsed, context)
        except ToolExecutionError as e:
            logger.warning(f"Tool {name} failed: {e}")
            return ToolResult.error(f"Tool failed: {e}", "failed")
        except Exception as e:
            logger.error(f"Tool {name} raised unexpectedly: {e}", exc_info=True)
            return ToolResult.error(f"Tool failed: {e}", "failed")

        logger.debug(f"Tool {name} succeeded: {output[:100]}...")
        return ToolResult.ok(output)


def _decode_arguments(raw_arguments: dict[str, Any] | str) -> dict[str, Any]:
    if isinstance(raw_arguments, dict):
        return raw_arguments
    if not raw_arguments.strip():
        return {}
    try:
        decoded = json.loads(raw_arguments)
    except json.JSONDecodeError as e:
        raise ToolArgumentsError(f"arguments are not valid JSON ({e.msg})") from e
    if not isinstance(decoded, dict):
        raise ToolArgumentsError("arguments must be a JSON object")
    return decoded
