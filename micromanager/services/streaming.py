"""Reduction of a provider delta stream into a finished assistant turn.

Tool-call fragments are accumulated by their positional index because a call's
id may arrive after its first fragment. Text is accumulated separately and
persisted through a ``ThrottledFlush`` so readers of the transcript can follow a
long generation: at most one write per interval while streaming, plus one final
write when the stream ends.
"""

import time
from collections.abc import AsyncIterable, Awaitable, Callable

from micromanager.models.llm import (
    AssistantTurn,
    GenerationResult,
    LLMUsage,
    StreamDelta,
    ToolCallRequest,
    ToolCallsTurn,
)
from micromanager.utils.logging import get_logger

logger = get_logger(__name__)

TOOL_CALLS_FINISH_REASON = "tool_calls"


class ProtocolViolationError(Exception):
    """The provider signalled tool calls but did not fully describe them."""


class ThrottledFlush:
    """Rate-limited writer for the latest snapshot of streamed text.

    ``push`` writes only when the text changed and the interval since the last
    write has elapsed; ``flush`` writes any unwritten text regardless of the
    interval. Write failures are logged and never raised.
    """

    def __init__(
        self,
        write: Callable[[str], Awaitable[None]],
        interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._write = write
        self.interval = interval
        self._clock = clock
        self._latest: str | None = None
        self._written: str | None = None
        self._last_write_at: float | None = None
        self.write_count = 0

    async def push(self, text: str) -> bool:
        """Offer a new snapshot; returns whether it was written."""
        self._latest = text
        if self._last_write_at is not None and self._clock() - self._last_write_at < self.interval:
            return False
        return await self._write_latest()

    async def flush(self) -> bool:
        """Write the latest snapshot unless it is already persisted."""
        return await self._write_latest()

    async def _write_latest(self) -> bool:
        text = self._latest
        if text is None or text == self._written:
            return False

        self._last_write_at = self._clock()
        try:
            await self._write(text)
        except Exception as e:
            logger.warning(f"Streaming flush failed, readers will see stale text: {e}")
            return False

        self._written = text
        self.write_count += 1
        return True


class StreamAggregator:
    """Consumes one generation pass and returns its terminal shape."""

    def __init__(self, flusher: ThrottledFlush | None = None):
        self.flusher = flusher

    async def consume(self, deltas: AsyncIterable[StreamDelta]) -> GenerationResult:
        """Reduce ``deltas`` to an ``AssistantTurn`` or a ``ToolCallsTurn``.

        Raises:
            ProtocolViolationError: If the stream finished with tool calls and any
                accumulated call lacks an id or a name, or no call was described.
        """
        text = ""
        calls: dict[int, ToolCallRequest] = {}
        finish_reason: str | None = None
        usage = LLMUsage()

        async for delta in deltas:
            if delta.text:
                text += delta.text
                if self.flusher is not None:
                    await self.flusher.push(text)

            for fragment in delta.tool_calls:
                call = calls.setdefault(fragment.index, ToolCallRequest())
                if fragment.id:
                    call.id = fragment.id
                if fragment.name:
                    call.name += fragment.name
                if fragment.arguments:
                    call.arguments += fragment.arguments

            if delta.finish_reason:
                finish_reason = delta.finish_reason
            usage.add(delta.usage)

        if self.flusher is not None:
            await self.flusher.flush()

        if finish_reason != TOOL_CALLS_FINISH_REASON:
            if calls:
                logger.warning(f"Discarding {len(calls)} tool call fragments from a '{finish_reason}' finish")
            return AssistantTurn(text=text, finish_reason=finish_reason, usage=usage)

        ordered = [calls[index] for index in sorted(calls)]
        if not ordered:
            raise ProtocolViolationError("Provider finished with tool_calls but requested no tool call")

        incomplete = [index for index in sorted(calls) if not calls[index].is_complete]
        if incomplete:
            raise ProtocolViolationError(f"Tool calls at positions {incomplete} are missing an id or a name")

        logger.debug(f"Stream finished with {len(ordered)} tool calls: {[call.name for call in ordered]}")
        return ToolCallsTurn(text=text, calls=ordered, usage=usage)
