"""Tests for stream aggregation and throttled persistence."""

import json

import pytest
from fakes import FakeClock, text_turn, tool_turn

from micromanager.models.llm import AssistantTurn, LLMUsage, StreamDelta, ToolCallDelta, ToolCallsTurn
from micromanager.services.streaming import ProtocolViolationError, StreamAggregator, ThrottledFlush


async def stream_of(deltas):
    for delta in deltas:
        yield delta


class RecordingWriter:
    """Async write callback that records every snapshot."""

    def __init__(self, fail: bool = False):
        self.writes: list[str] = []
        self.fail = fail

    async def __call__(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("store unavailable")
        self.writes.append(text)


class TestThrottledFlush:
    """Tests for the write-rate-limited snapshot writer."""

    @pytest.mark.asyncio
    async def test_first_push_writes_immediately(self):
        """Test that the first snapshot is visible without waiting for the interval."""
        writer = RecordingWriter()
        flusher = ThrottledFlush(writer, interval=1.0, clock=FakeClock())

        assert await flusher.push("Hi")
        assert writer.writes == ["Hi"]

    @pytest.mark.asyncio
    async def test_pushes_within_interval_are_throttled(self):
        """Test at most one write per interval while streaming."""
        writer = RecordingWriter()
        clock = FakeClock()
        flusher = ThrottledFlush(writer, interval=1.0, clock=clock)

        await flusher.push("a")
        clock.advance(0.3)
        await flusher.push("ab")
        clock.advance(0.3)
        await flusher.push("abc")
        assert writer.writes == ["a"]

        clock.advance(0.5)
        await flusher.push("abcd")
        assert writer.writes == ["a", "abcd"]

    @pytest.mark.asyncio
    async def test_flush_writes_latest_regardless_of_interval(self):
        """Test that the final flush persists text withheld by throttling."""
        writer = RecordingWriter()
        flusher = ThrottledFlush(writer, interval=1.0, clock=FakeClock())

        await flusher.push("a")
        await flusher.push("ab")
        assert await flusher.flush()
        assert writer.writes == ["a", "ab"]

    @pytest.mark.asyncio
    async def test_repeated_flush_is_idempotent(self):
        """Test that flushing with no new text never writes more than once more."""
        writer = RecordingWriter()
        flusher = ThrottledFlush(writer, interval=1.0, clock=FakeClock())

        await flusher.push("a")
        await flusher.push("ab")
        for _ in range(5):
            await flusher.flush()

        assert writer.writes == ["a", "ab"]
        assert flusher.write_count == 2

    @pytest.mark.asyncio
    async def test_flush_without_text_writes_nothing(self):
        """Test that an empty stream produces no writes."""
        writer = RecordingWriter()
        flusher = ThrottledFlush(writer, clock=FakeClock())

        assert not await flusher.flush()
        assert writer.writes == []

    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self):
        """Test that a failing store never raises into the stream."""
        writer = RecordingWriter(fail=True)
        flusher = ThrottledFlush(writer, clock=FakeClock())

        assert not await flusher.push("a")
        assert not await flusher.flush()
        assert flusher.write_count == 0


class TestStreamAggregator:
    """Tests for reducing a delta stream to a terminal turn."""

    @pytest.mark.asyncio
    async def test_stop_produces_concatenated_text(self):
        """Test that the final answer is every text delta in order."""
        result = await StreamAggregator().consume(stream_of(text_turn("Hi", " there", "!")))

        assert isinstance(result, AssistantTurn)
        assert result.kind == "assistant"
        assert result.text == "Hi there!"
        assert result.finish_reason == "stop"

    @pytest.mark.asyncio
    async def test_other_finish_reasons_are_final_answers(self):
        """Test that only tool_calls is special; length is a final answer."""
        result = await StreamAggregator().consume(stream_of(text_turn("cut", finish_reason="length")))

        assert isinstance(result, AssistantTurn)
        assert result.finish_reason == "length"

    @pytest.mark.asyncio
    async def test_usage_is_summed(self):
        """Test that usage from several deltas is accumulated."""
        deltas = [
            StreamDelta(usage=LLMUsage(input_tokens=12)),
            StreamDelta(text="ok"),
            StreamDelta(finish_reason="stop", usage=LLMUsage(output_tokens=3)),
        ]

        result = await StreamAggregator().consume(stream_of(deltas))

        assert result.usage.input_tokens == 12
        assert result.usage.output_tokens == 3

    @pytest.mark.asyncio
    async def test_tool_calls_in_index_order(self):
        """Test that calls are returned in positional order, not arrival order."""
        deltas = [
            StreamDelta(tool_calls=[ToolCallDelta(index=1, name="get_weather")]),
            StreamDelta(tool_calls=[ToolCallDelta(index=0, id="call_a", name="get_user_")]),
            StreamDelta(tool_calls=[ToolCallDelta(index=0, name="context", arguments='{"format"')]),
            StreamDelta(tool_calls=[ToolCallDelta(index=1, arguments='{"city": "Oslo"}')]),
            StreamDelta(tool_calls=[ToolCallDelta(index=0, arguments=': "text"}')]),
            # id for index 1 arrives after its first fragment
            StreamDelta(tool_calls=[ToolCallDelta(index=1, id="call_b")]),
            StreamDelta(finish_reason="tool_calls"),
        ]

        result = await StreamAggregator().consume(stream_of(deltas))

        assert isinstance(result, ToolCallsTurn)
        assert [call.id for call in result.calls] == ["call_a", "call_b"]
        assert [call.name for call in result.calls] == ["get_user_context", "get_weather"]
        assert json.loads(result.calls[0].arguments) == {"format": "text"}
        assert json.loads(result.calls[1].arguments) == {"city": "Oslo"}

    @pytest.mark.asyncio
    async def test_tool_calls_keep_preamble_text(self):
        """Test that text before the calls is kept on the turn."""
        deltas = tool_turn(("call_1", "get_weather", {"city": "Lima"}), text="Let me check.")

        result = await StreamAggregator().consume(stream_of(deltas))

        assert result.kind == "tool_calls"
        assert result.text == "Let me check."

    @pytest.mark.asyncio
    async def test_missing_id_is_protocol_violation(self):
        """Test that a call without an id at a tool_calls finish is fatal."""
        deltas = [
            StreamDelta(tool_calls=[ToolCallDelta(index=0, name="get_weather", arguments="{}")]),
            StreamDelta(finish_reason="tool_calls"),
        ]

        with pytest.raises(ProtocolViolationError):
            await StreamAggregator().consume(stream_of(deltas))

    @pytest.mark.asyncio
    async def test_missing_name_is_protocol_violation(self):
        """Test that one incomplete call fails the whole turn."""
        deltas = [
            StreamDelta(tool_calls=[ToolCallDelta(index=0, id="call_1", name="get_weather")]),
            StreamDelta(tool_calls=[ToolCallDelta(index=1, id="call_2", arguments="{}")]),
            StreamDelta(finish_reason="tool_calls"),
        ]

        with pytest.raises(ProtocolViolationError, match=r"\[1\]"):
            await StreamAggregator().consume(stream_of(deltas))

    @pytest.mark.asyncio
    async def test_tool_calls_finish_without_calls(self):
        """Test that a tool_calls finish with no calls is a protocol violation."""
        with pytest.raises(ProtocolViolationError):
            await StreamAggregator().consume(
                stream_of([StreamDelta(text="hm"), StreamDelta(finish_reason="tool_calls")])
            )

    @pytest.mark.asyncio
    async def test_fragments_ignored_on_stop(self):
        """Test that stray call fragments do not turn a stop into tool calls."""
        deltas = [
            StreamDelta(text="Done"),
            StreamDelta(tool_calls=[ToolCallDelta(index=0, arguments="{")]),
            StreamDelta(finish_reason="stop"),
        ]

        result = await StreamAggregator().consume(stream_of(deltas))

        assert isinstance(result, AssistantTurn)
        assert result.text == "Done"

    @pytest.mark.asyncio
    async def test_text_is_flushed_through_throttle(self):
        """Test partial visibility while streaming plus the final flush."""
        writer = RecordingWriter()
        clock = FakeClock()
        flusher = ThrottledFlush(writer, interval=1.0, clock=clock)

        async def slow_stream():
            yield StreamDelta(text="Hel")
            clock.advance(0.2)
            yield StreamDelta(text="lo")
            clock.advance(1.0)
            yield StreamDelta(text=" wor")
            yield StreamDelta(text="ld")
            yield StreamDelta(finish_reason="stop")

        result = await StreamAggregator(flusher).consume(slow_stream())

        assert result.text == "Hello world"
        assert writer.writes == ["Hel", "Hello wor", "Hello world"]
        # every snapshot is a prefix of the final text
        assert all(result.text.startswith(snapshot) for snapshot in writer.writes)

    @pytest.mark.asyncio
    async def test_tool_turn_without_text_writes_nothing(self):
        """Test that a pure tool-call turn leaves the placeholder untouched."""
        writer = RecordingWriter()
        flusher = ThrottledFlush(writer, clock=FakeClock())

        await StreamAggregator(flusher).consume(stream_of(tool_turn(("call_1", "get_weather", {"city": "Rome"}))))

        assert writer.writes == []
