"""Tests for the tool-call loop controller and transcript conversion."""

from unittest.mock import AsyncMock

import pytest
from fakes import FailingProvider, RecordingNotifier, ScriptedProvider, make_principal, text_turn, tool_turn

from micromanager.graphs.conversation import ToolLoopController
from micromanager.graphs.nodes import LIMIT_REACHED_MESSAGE
from micromanager.graphs.prompts import build_system_prompt, transcript_to_llm_messages
from micromanager.models.context import ContextUpdate
from micromanager.models.llm import TextBlock, ToolResultBlock, ToolUseBlock
from micromanager.models.messages import ConversationMessage
from micromanager.tools import ToolDispatcher, build_default_registry
from micromanager.utils.tasks import DetachedTasks


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def tasks():
    return DetachedTasks()


@pytest.fixture
def make_controller(transcript, context_store, audit_log, notifier, tasks):
    def build(provider, **kwargs):
        registry = build_default_registry(context_store, transcript)
        dispatcher = ToolDispatcher(registry, registry.scope_authority(), audit_log)
        return ToolLoopController(
            provider=provider,
            transcript=transcript,
            context_store=context_store,
            registry=registry,
            dispatcher=dispatcher,
            notifier=notifier,
            tasks=tasks,
            flush_interval=0.0,
            **kwargs,
        )

    return build


class TestToolLoopController:
    """End-to-end runs against a scripted provider."""

    @pytest.mark.asyncio
    async def test_plain_answer(self, make_controller, transcript, tasks, notifier):
        """Test a single pass with no tool calls."""
        controller = make_controller(ScriptedProvider([text_turn("Hi", " there")]))

        result = await controller.run(make_principal(), "hello", run_id="run_1")

        assert result.outcome == "completed"
        assert result.succeeded
        assert result.content == "Hi there"
        assert result.passes == 1
        assert result.usage.total_tokens == 15

        messages = await transcript.list_recent("user-1", 100)
        assert [(message.role, message.content) for message in messages] == [
            ("user", "hello"),
            ("assistant", "Hi there"),
        ]
        assistant = messages[1]
        assert assistant.id == result.message_id
        assert not assistant.streaming
        assert assistant.metadata["runId"] == "run_1"
        assert assistant.metadata["usage"]["total_tokens"] == 15

        await tasks.drain()
        assert notifier.sent == [("user-1", "🤖 Assistant response:\n\nHi there")]

    @pytest.mark.asyncio
    async def test_tool_round_then_answer(self, make_controller, transcript, audit_log):
        """Test that a tool round is persisted and fed into the next pass."""
        provider = ScriptedProvider(
            [
                tool_turn(("call_1", "get_weather", {"city": "Oslo"}), text="Checking."),
                text_turn("It is sunny."),
            ]
        )
        controller = make_controller(provider)

        result = await controller.run(make_principal(), "weather?", run_id="run_1")

        assert result.outcome == "completed"
        assert result.passes == 2

        messages = await transcript.list_recent("user-1", 100)
        assert [(message.role, message.type) for message in messages] == [
            ("user", "text"),
            ("assistant", "state"),
            ("tool", "tool"),
            ("assistant", "text"),
        ]
        state_record, tool_message = messages[1], messages[2]
        assert state_record.content == "Checking."
        assert state_record.metadata["toolCalls"][0]["id"] == "call_1"
        assert tool_message.tool_call_id == "call_1"
        assert tool_message.metadata == {"toolName": "get_weather", "error": False, "runId": "run_1"}

        second = provider.requests[1].messages
        assert second[-2].role == "assistant"
        assert ToolUseBlock(id="call_1", name="get_weather", input={"city": "Oslo"}) in second[-2].content
        assert second[-1].content == [
            ToolResultBlock(tool_use_id="call_1", content=tool_message.content, is_error=False)
        ]

        [entry] = await audit_log.entries("run_1")
        assert entry.status == "success"

    @pytest.mark.asyncio
    async def test_denied_tool_is_fed_back(self, make_controller, transcript, audit_log):
        """Test that a denied call yields a denial result and the run continues."""
        provider = ScriptedProvider(
            [
                tool_turn(("call_1", "get_user_context", {})),
                text_turn("I can't read your context."),
            ]
        )
        controller = make_controller(provider)

        result = await controller.run(make_principal(scopes=set()), "what do you know?", run_id="run_1")

        assert result.outcome == "completed"
        denial = "Access denied: Missing required scope 'read:user-context'"
        tool_message = (await transcript.list_recent("user-1", 100))[2]
        assert tool_message.content == denial
        assert tool_message.metadata["error"] is True

        [result_block] = provider.requests[1].messages[-1].content
        assert result_block.content == denial
        assert result_block.is_error

        [entry] = await audit_log.entries("run_1")
        assert entry.status == "error"

    @pytest.mark.asyncio
    async def test_invalid_event_time_is_fed_back(self, make_controller, transcript, audit_log):
        """Test that a naive event time becomes an argument error and the run continues."""
        arguments = {"summary": "Lunch", "start": "2026-01-01T10:00:00", "end": "2026-01-01T11:00:00Z"}
        provider = ScriptedProvider(
            [
                tool_turn(("call_1", "create_event", arguments)),
                text_turn("Which timezone should I use?"),
            ]
        )
        controller = make_controller(provider)

        result = await controller.run(make_principal(google_token="ya29.x"), "book lunch", run_id="run_1")

        assert result.outcome == "completed"
        assert result.passes == 2
        tool_message = (await transcript.list_recent("user-1", 100))[2]
        assert tool_message.content.startswith("Invalid arguments for create_event:")
        assert tool_message.metadata["error"] is True

        [entry] = await audit_log.entries("run_1")
        assert entry.status == "error"

    @pytest.mark.asyncio
    async def test_pass_limit(self, make_controller, transcript):
        """Test that a model that never stops calling tools is cut off after four passes."""
        provider = ScriptedProvider([tool_turn(("call_x", "get_weather", {"city": "Rome"}))], repeat_last=True)
        controller = make_controller(provider)

        result = await controller.run(make_principal(), "loop", run_id="run_1")

        assert result.outcome == "iteration_limit"
        assert result.passes == 4
        assert result.content == LIMIT_REACHED_MESSAGE
        assert len(provider.requests) == 4

        last = (await transcript.list_recent("user-1", 100))[-1]
        assert last.content == LIMIT_REACHED_MESSAGE
        assert last.metadata["error"] is True
        assert not last.streaming

    @pytest.mark.asyncio
    async def test_custom_pass_limit(self, make_controller):
        """Test a smaller pass budget."""
        provider = ScriptedProvider([tool_turn(("call_x", "get_weather", {"city": "Rome"}))], repeat_last=True)

        result = await make_controller(provider, max_passes=2).run(make_principal(), "loop")

        assert result.outcome == "iteration_limit"
        assert len(provider.requests) == 2

    def test_invalid_pass_limit(self, make_controller):
        with pytest.raises(ValueError):
            make_controller(ScriptedProvider([]), max_passes=0)

    @pytest.mark.asyncio
    async def test_protocol_violation(self, make_controller, transcript):
        """Test that an incomplete tool call ends the run with a protocol error."""
        provider = ScriptedProvider([tool_turn(("", "get_weather", {"city": "Rome"}))])
        controller = make_controller(provider)

        result = await controller.run(make_principal(), "hi", run_id="run_1")

        assert result.outcome == "protocol_error"
        last = (await transcript.list_recent("user-1", 100))[-1]
        assert last.content.startswith("Error: ")
        assert last.metadata["error"] is True

    @pytest.mark.asyncio
    async def test_provider_failure_finalizes_placeholder(self, make_controller, transcript, notifier, tasks):
        """Test that a failing stream leaves an error message rather than an open placeholder."""
        controller = make_controller(FailingProvider(RuntimeError("upstream exploded"), prefix="Partial"))

        result = await controller.run(make_principal(), "hi", run_id="run_1")

        assert result.outcome == "error"
        assert result.error == "upstream exploded"
        messages = await transcript.list_recent("user-1", 100)
        assert messages[-1].content == "Error: upstream exploded"
        assert not any(message.streaming for message in messages)

        await tasks.drain()
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_context_in_system_prompt(self, make_controller, context_store):
        """Test that the user's context document reaches the system prompt."""
        await context_store.apply_updates("user-1", [ContextUpdate(path="/name", value="Ada")])
        provider = ScriptedProvider([text_turn("Hi Ada")])

        await make_controller(provider).run(make_principal(), "who am I?")

        assert '"/name": "Ada"' in provider.requests[0].system_prompt
        assert provider.requests[0].parallel_tool_calls is False

    @pytest.mark.asyncio
    async def test_store_failure_before_generation(self, make_controller):
        """Test that a failing transcript store is reported as an error result."""
        controller = make_controller(ScriptedProvider([text_turn("unused")]))
        controller.transcript = AsyncMock()
        controller.transcript.insert.side_effect = ConnectionError("db down")

        result = await controller.run(make_principal(), "hi", run_id="run_1")

        assert result.outcome == "error"
        assert result.message_id is None

    @pytest.mark.asyncio
    async def test_run_id_from_principal(self, make_controller, transcript):
        """Test that a run id bound to the credential is used."""
        controller = make_controller(ScriptedProvider([text_turn("ok")]))

        result = await controller.run(make_principal(run_id="run_from_token"), "hi")

        assert result.run_id == "run_from_token"


def message(role, content="", **kwargs) -> ConversationMessage:
    return ConversationMessage(user_id="user-1", role=role, content=content, **kwargs)


class TestTranscriptConversion:
    """Tests for building provider messages from the stored transcript."""

    def test_plain_exchange(self):
        messages = transcript_to_llm_messages([message("user", "hi"), message("assistant", "hello")])

        assert [(m.role, m.content) for m in messages] == [("user", "hi"), ("assistant", "hello")]

    def test_leading_assistant_and_streaming_dropped(self):
        """Test that history never starts with an assistant turn or includes open placeholders."""
        messages = transcript_to_llm_messages(
            [
                message("assistant", "earlier answer"),
                message("user", "hi"),
                message("assistant", "", metadata={"streaming": True}),
            ]
        )

        assert [(m.role, m.content) for m in messages] == [("user", "hi")]

    def test_error_messages_dropped(self):
        messages = transcript_to_llm_messages(
            [message("user", "hi"), message("assistant", "Error: boom", metadata={"error": True})]
        )

        assert len(messages) == 1

    def test_tool_round(self):
        """Test that a state record and its results become tool_use and tool_result blocks."""
        transcript = [
            message("user", "weather?"),
            message(
                "assistant",
                "Checking.",
                type="state",
                metadata={"toolCalls": [{"id": "c1", "name": "get_weather", "arguments": '{"city": "Oslo"}'}]},
            ),
            message("tool", "sunny", type="tool", tool_call_id="c1", metadata={"error": False}),
            message("assistant", "It is sunny."),
        ]

        messages = transcript_to_llm_messages(transcript)

        assert [m.role for m in messages] == ["user", "assistant", "user", "assistant"]
        assert messages[1].content == [
            TextBlock(text="Checking."),
            ToolUseBlock(id="c1", name="get_weather", input={"city": "Oslo"}),
        ]
        assert messages[2].content == [ToolResultBlock(tool_use_id="c1", content="sunny")]

    def test_unanswered_and_orphan_calls_dropped(self):
        """Test that calls without results and results without calls are left out."""
        transcript = [
            message("user", "do things"),
            message(
                "assistant",
                type="state",
                metadata={"toolCalls": [{"id": "c1", "name": "get_weather", "arguments": "{}"}]},
            ),
            message("tool", "stray", type="tool", tool_call_id="c9"),
            message("user", "again"),
        ]

        messages = transcript_to_llm_messages(transcript)

        assert len(messages) == 1
        assert messages[0].content == [TextBlock(text="do things"), TextBlock(text="again")]

    def test_system_prompt(self):
        prompt = build_system_prompt("(no saved context yet)")

        assert "Micromanager" in prompt
        assert prompt.endswith("What you know about the user:\n(no saved context yet)")
