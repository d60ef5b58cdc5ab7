"""Anthropic streaming provider with rate limiting and error handling."""

import asyncio
import os
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal, Protocol, TypeVar

import tiktoken
from anthropic import APIError, AsyncAnthropic
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter
from pydantic import BaseModel

from micromanager.models.llm import (
    GenerationRequest,
    LLMMessage,
    LLMToolSchema,
    LLMUsage,
    StreamDelta,
    TextBlock,
    ToolCallDelta,
    ToolResultBlock,
    ToolUseBlock,
)
from micromanager.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Provider stop reasons mapped onto the finish reasons the stream aggregator understands
STOP_REASONS = {
    "tool_use": "tool_calls",
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "refusal": "stop",
    "pause_turn": "stop",
}


class GenerationError(Exception):
    """The provider failed to produce a stream."""


class GenerationProvider(Protocol):
    """Streaming model provider."""

    def stream(self, request: GenerationRequest) -> AsyncIterator[StreamDelta]:
        """Yield normalized deltas for one generation pass."""
        ...


class CacheControl(BaseModel):
    """Cache control configuration for prompt caching."""

    type: Literal["ephemeral"] = "ephemeral"


class AnthropicTool(BaseModel):
    """Tool definition for Anthropic API."""

    name: str
    description: str
    input_schema: dict[str, Any]
    cache_control: CacheControl | None = None


@dataclass
class AnthropicConfig:
    """Configuration for the Anthropic provider."""

    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 2048
    temperature: float = 0.2
    max_retries: int = 3
    retry_delay: float = 1.0

    # Token limits for truncation
    max_conversation_tokens: int = 200000
    token_headroom: int = 4000  # Reserve tokens for response

    @classmethod
    def from_env(cls) -> "AnthropicConfig":
        config = cls()
        config.model = os.getenv("ANTHROPIC_MODEL", config.model)
        return config


class AnthropicRateLimiter:
    """Moving-window request and token limiter using the limits library."""

    def __init__(self, requests_per_minute: int = 50, tokens_per_minute: int = 40_000):
        """Initialize rate limiter.

        Args:
            requests_per_minute: Maximum requests per minute
            tokens_per_minute: Maximum tokens per minute
        """
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)

        self.request_limit = parse(f"{requests_per_minute}/minute")
        self.token_limit = parse(f"{tokens_per_minute}/minute")

    async def check_rate_limit(self, estimated_tokens: int, identifier: str = "anthropic") -> None:
        """Wait until the request fits within both limits."""
        logger.debug(f"Checking rate limit for {estimated_tokens} tokens, identifier: {identifier}")

        if not self.limiter.hit(self.request_limit, identifier):
            await self._wait_for_reset(self.request_limit, identifier, "Request")

        token_identifier = f"{identifier}_tokens"
        if not self.limiter.hit(self.token_limit, token_identifier, cost=estimated_tokens):
            await self._wait_for_reset(self.token_limit, token_identifier, "Token")

    async def _wait_for_reset(self, limit: Any, identifier: str, label: str) -> None:
        window_stats = self.limiter.get_window_stats(limit, identifier)
        if window_stats:
            wait_time = max(0.0, window_stats.reset_time - time.time())
            if wait_time > 0:
                logger.warning(f"{label} rate limit exceeded, waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)


class AnthropicProvider:
    """Streams Claude responses as provider-neutral ``StreamDelta`` values.

    Tool-use blocks are reported as tool-call fragments addressed by their
    content block index; ``input_json_delta`` fragments carry the arguments.
    Parallel tool use is disabled unless the request asks for it.
    """

    tokenizer: tiktoken.Encoding | None = None

    def __init__(
        self,
        api_key: str | None = None,
        config: AnthropicConfig | None = None,
        client: AsyncAnthropic | None = None,
        rate_limiter: AnthropicRateLimiter | None = None,
    ):
        """Initialize the provider.

        Args:
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var)
            config: Provider configuration
            client: Pre-built SDK client, mainly for tests
            rate_limiter: Shared rate limiter
        """
        self.config = config or AnthropicConfig.from_env()
        if client is None:
            anthropic_api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
            if not anthropic_api_key:
                raise ValueError("ANTHROPIC_API_KEY environment variable is required")
            client = AsyncAnthropic(api_key=anthropic_api_key)
        self.client = client
        self.rate_limiter = rate_limiter or AnthropicRateLimiter()

        try:
            # Close approximation for Claude
            self.tokenizer = tiktoken.encoding_for_model("gpt-4")
        except Exception:
            self.tokenizer = None

    async def stream(self, request: GenerationRequest) -> AsyncIterator[StreamDelta]:
        tools = self._convert_tools(request.tools)
        messages = self.truncate_conversation(request.messages, request.system_prompt, tools)

        estimated_tokens = self._estimate_tokens(messages, request.system_prompt)
        await self.rate_limiter.check_rate_limit(estimated_tokens)

        params: dict[str, Any] = {
            "model": request.model or self.config.model,
            "max_tokens": self.config.max_tokens,
            "temperature": request.temperature if request.temperature is not None else self.config.temperature,
            "system": request.system_prompt,
            "messages": [message.model_dump() for message in messages],
            "stream": True,
        }
        if tools:
            params["tools"] = [tool.model_dump(exclude_none=True) for tool in tools]
            params["tool_choice"] = {"type": "auto", "disable_parallel_tool_use": not request.parallel_tool_calls}

        logger.debug(f"Streaming from {params['model']} with {len(messages)} messages and {len(tools)} tools")
        events = await self._request_with_retries(lambda: self.client.messages.create(**params))

        try:
            async for event in events:
                delta = self._convert_event(event)
                if delta is not None:
                    yield delta
        except APIError as e:
            raise GenerationError(f"Anthropic stream failed: {e}") from e

    def _convert_event(self, event: Any) -> StreamDelta | None:
        """Map one raw SDK stream event onto a ``StreamDelta``."""
        event_type = getattr(event, "type", None)

        if event_type == "message_start":
            usage = getattr(event.message, "usage", None)
            if usage is None:
                return None
            return StreamDelta(usage=LLMUsage(input_tokens=usage.input_tokens or 0))

        if event_type == "content_block_start":
            block = event.content_block
            if block.type == "tool_use":
                return StreamDelta(tool_calls=[ToolCallDelta(index=event.index, id=block.id, name=block.name)])
            if block.type == "text" and block.text:
                return StreamDelta(text=block.text)
            return None

        if event_type == "content_block_delta":
            delta = event.delta
            if delta.type == "text_delta":
                return StreamDelta(text=delta.text)
            if delta.type == "input_json_delta":
                return StreamDelta(tool_calls=[ToolCallDelta(index=event.index, arguments=delta.partial_json)])
            return None

        if event_type == "message_delta":
            stop_reason = event.delta.stop_reason
            usage = getattr(event, "usage", None)
            return StreamDelta(
                finish_reason=STOP_REASONS.get(stop_reason, stop_reason) if stop_reason else None,
                usage=LLMUsage(output_tokens=usage.output_tokens or 0) if usage is not None else None,
            )

        return None

    async def _request_with_retries(self, call: Callable[[], Awaitable[T]]) -> T:
        """Open the stream, retrying rate limits and server errors."""
        for attempt in range(self.config.max_retries):
            try:
                return await call()

            except APIError as e:
                status_code = getattr(e, "status_code", None)
                last_attempt = attempt >= self.config.max_retries - 1
                if status_code == 429 and not last_attempt:
                    retry_after = 60
                    response = getattr(e, "response", None)
                    if response is not None:
                        retry_after = int(response.headers.get("retry-after", 60))
                    if retry_after < 120:
                        logger.warning(f"Anthropic rate limited, retrying in {retry_after}s")
                        await asyncio.sleep(retry_after)
                        continue

                elif status_code is not None and status_code >= 500 and not last_attempt:
                    # Server error, retry with exponential backoff
                    await asyncio.sleep(self.config.retry_delay * (2**attempt))
                    continue

                raise GenerationError(f"Anthropic request failed: {e}") from e

        raise GenerationError(f"Failed to open stream after {self.config.max_retries} attempts")

    @staticmethod
    def _convert_tools(tools: list[LLMToolSchema]) -> list[AnthropicTool]:
        converted = [
            AnthropicTool(name=tool.name, description=tool.description, input_schema=tool.input_schema)
            for tool in tools
        ]
        if converted:
            # Cache all tool definitions by marking the last one
            converted[-1].cache_control = CacheControl()
        return converted

    def estimate_message_tokens(self, message: str) -> int:
        """Estimate token count for a single string."""
        try:
            return len(self.tokenizer.encode(message)) if self.tokenizer else len(message) // 4
        except Exception:
            # Fallback: roughly 4 characters per token
            return len(message) // 4

    def _message_text(self, message: LLMMessage) -> str:
        if isinstance(message.content, str):
            return message.content
        parts = []
        for block in message.content:
            if isinstance(block, TextBlock):
                parts.append(block.text)
            elif isinstance(block, ToolResultBlock):
                parts.append(block.content)
            elif isinstance(block, ToolUseBlock):
                parts.append(str(block.input))
        return "".join(parts)

    def _estimate_tokens(self, messages: list[LLMMessage], system_prompt: str) -> int:
        text_content = system_prompt + "".join(self._message_text(message) for message in messages)
        return self.estimate_message_tokens(text_content)

    def truncate_conversation(
        self, messages: list[LLMMessage], system_prompt: str, tools: list[AnthropicTool] | None = None
    ) -> list[LLMMessage]:
        """Drop the oldest messages until the conversation fits the context window.

        The kept conversation always starts with a user message that is not a
        bare tool result, so tool_use/tool_result pairs are never split.
        """
        if not messages:
            return messages

        available_tokens = self.config.max_conversation_tokens - self.config.token_headroom
        available_tokens -= self.estimate_message_tokens(system_prompt)
        if tools:
            tool_content = "".join(tool.name + tool.description + str(tool.input_schema) for tool in tools)
            available_tokens -= self.estimate_message_tokens(tool_content)

        truncated: list[LLMMessage] = []
        current_tokens = 0
        for message in reversed(messages):
            message_tokens = self.estimate_message_tokens(self._message_text(message))
            if current_tokens + message_tokens > available_tokens:
                break
            truncated.insert(0, message)
            current_tokens += message_tokens

        while truncated and not _starts_turn(truncated[0]):
            truncated.pop(0)

        if len(truncated) < len(messages):
            logger.warning(
                f"Truncated conversation from {len(messages)} to {len(truncated)} messages "
                f"to fit within {available_tokens} token limit"
            )
        return truncated


def _starts_turn(message: LLMMessage) -> bool:
    if message.role != "user":
        return False
    if isinstance(message.content, str):
        return True
    return not any(isinstance(block, ToolResultBlock) for block in message.content)
