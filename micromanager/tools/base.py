"""Base types and definitions for tools."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ValidationError

from micromanager.auth.verifier import Principal

ToolResultKind = Literal["ok", "unauthorized", "forbidden", "invalid_arguments", "failed", "unknown_tool"]


class ToolArgumentsError(Exception):
    """Tool input failed validation; nothing was executed."""


class ToolExecutionError(Exception):
    """The tool ran and failed."""


class MissingDelegatedSecretError(ToolExecutionError):
    """The principal carries no delegated credential for this tool."""


class UnknownToolError(Exception):
    """No tool is registered under the requested name."""


@dataclass(frozen=True)
class ToolContext:
    """Per-invocation context handed to tool handlers."""

    principal: Principal
    run_id: str

    @property
    def user_id(self) -> str:
        return self.principal.client_id

    def require_google_token(self) -> str:
        """Delegated Google access token, or raise if the user has not linked an account."""
        token = self.principal.google_access_token
        if not token:
            raise MissingDelegatedSecretError(
                "Google account is not linked, so calendar and task tools are unavailable"
            )
        return token


@dataclass(frozen=True)
class ToolResult:
    """Normalized outcome of a tool invocation."""

    content: str
    is_error: bool = False
    kind: ToolResultKind = "ok"

    @classmethod
    def ok(cls, content: str) -> "ToolResult":
        return cls(content=content)

    @classmethod
    def error(cls, content: str, kind: ToolResultKind) -> "ToolResult":
        return cls(content=content, is_error=True, kind=kind)


ToolHandler = Callable[[Any, ToolContext], Awaitable[str]]


@dataclass(frozen=True)
class ToolDefinition:
    """Definition of a tool available to the agent."""

    name: str
    description: str
    input_schema_class: type[BaseModel]
    handler: ToolHandler
    required_scopes: frozenset[str] = field(default_factory=frozenset)

    def get_json_schema(self) -> dict[str, Any]:
        """Get JSON schema for this tool's input."""
        return self.input_schema_class.model_json_schema()

    def parse_input(self, raw_input: dict[str, Any]) -> BaseModel:
        """Parse and validate tool input."""
        try:
            return self.input_schema_class.model_validate(raw_input)
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(part) for part in error['loc']) or 'input'}: {error['msg']}" for error in e.errors()
            )
            raise ToolArgumentsError(details) from e

    @property
    def full_description(self) -> str:
        """Description including the scopes the tool requires."""
        if not self.required_scopes:
            return self.description
        return f"{self.description} Requires scope: {' or '.join(sorted(self.required_scopes))}."


class EmptyInput(BaseModel):
    """Input schema for tools that take no parameters."""
