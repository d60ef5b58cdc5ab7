"""LLM-related data models and types (provider-agnostic)."""

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict


# Content block types
class TextBlock(BaseModel):
    """Text content block."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    """Tool use content block."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any]


class ToolResultBlock(BaseModel):
    """Tool result content block."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = TextBlock | ToolUseBlock | ToolResultBlock


class LLMMessage(BaseModel):
    """A message for LLM conversation."""

    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]


class LLMToolSchema(BaseModel):
    """Tool definition sent to the provider."""

    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass
class LLMUsage:
    """Token usage accumulated across generation passes."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: "LLMUsage | None") -> None:
        if other is None:
            return
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens

    def as_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class GenerationRequest:
    """One streaming generation pass."""

    system_prompt: str
    messages: list[LLMMessage]
    tools: list[LLMToolSchema] = field(default_factory=list)
    model: str | None = None
    temperature: float | None = None
    parallel_tool_calls: bool = False


# Stream deltas
@dataclass
class ToolCallDelta:
    """Fragment of a tool call, addressed by its position in the response."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass
class StreamDelta:
    """One normalized chunk of a provider stream."""

    text: str | None = None
    tool_calls: list[ToolCallDelta] = field(default_factory=list)
    finish_reason: str | None = None
    usage: LLMUsage | None = None


@dataclass
class ToolCallRequest:
    """A tool call as accumulated from the stream."""

    id: str = ""
    name: str = ""
    arguments: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.id) and bool(self.name)

    def as_dict(self) -> dict[str, str]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass
class AssistantTurn:
    """Finished natural-language answer."""

    text: str
    finish_reason: str | None = None
    usage: LLMUsage | None = None
    kind: Literal["assistant"] = "assistant"


@dataclass
class ToolCallsTurn:
    """Assistant turn requesting one or more tool calls."""

    text: str
    calls: list[ToolCallRequest]
    usage: LLMUsage | None = None
    kind: Literal["tool_calls"] = "tool_calls"


GenerationResult = AssistantTurn | ToolCallsTurn
