"""Node implementations for the tool-call loop graph."""

from typing import Any

from micromanager.clients.anthropic import GenerationProvider
from micromanager.graphs.prompts import build_system_prompt, transcript_to_llm_messages
from micromanager.graphs.state import LoopState
from micromanager.models.llm import AssistantTurn, GenerationRequest, LLMUsage
from micromanager.models.messages import ConversationMessage
from micromanager.services.notifications import Notifier
from micromanager.services.streaming import ProtocolViolationError, StreamAggregator, ThrottledFlush
from micromanager.services.transcript import TranscriptStore
from micromanager.tools.dispatcher import ToolDispatcher
from micromanager.tools.registry import ToolsRegistry
from micromanager.utils.logging import get_logger
from micromanager.utils.tasks import DetachedTasks

logger = get_logger(__name__)

LIMIT_REACHED_MESSAGE = "Tool loop limit reached. I stopped before finishing; please try a simpler request."
ASSISTANT_SOURCE = "micromanager"


def placeholder_message(user_id: str, run_id: str) -> ConversationMessage:
    """Empty assistant message that receives streamed text."""
    return ConversationMessage(
        user_id=user_id,
        role="assistant",
        content="",
        source=ASSISTANT_SOURCE,
        metadata={"streaming": True, "runId": run_id},
    )


async def finalize_with_error(transcript: TranscriptStore, message_id: str, run_id: str, error: str) -> bool:
    """Close an open placeholder with error text; failures are only logged."""
    try:
        await transcript.update(
            message_id,
            {"content": f"Error: {error}", "metadata": {"streaming": False, "error": True, "runId": run_id}},
        )
    except Exception as e:
        logger.error(f"Could not finalize placeholder {message_id} for run {run_id}: {e}", exc_info=True)
        return False
    return True


class LoopNodes:
    """Graph nodes bound to the collaborators of one controller."""

    def __init__(
        self,
        provider: GenerationProvider,
        transcript: TranscriptStore,
        registry: ToolsRegistry,
        dispatcher: ToolDispatcher,
        notifier: Notifier,
        tasks: DetachedTasks,
        flush_interval: float = 1.0,
        model: str | None = None,
    ):
        self.provider = provider
        self.transcript = transcript
        self.registry = registry
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.tasks = tasks
        self.flush_interval = flush_interval
        self.model = model

    async def generate_node(self, state: LoopState) -> dict[str, Any]:
        """Run one streaming generation pass into the open placeholder."""
        passes = state.passes + 1
        logger.info(f"Run {state.run_id}: generation pass {passes}/{state.max_passes}")

        placeholder_id = state.placeholder_id

        async def write_partial(text: str) -> None:
            await self.transcript.update(placeholder_id, {"content": text})

        request = GenerationRequest(
            system_prompt=build_system_prompt(state.context_text),
            messages=transcript_to_llm_messages(state.history),
            tools=self.registry.get_llm_tools(),
            model=self.model,
            parallel_tool_calls=False,
        )
        aggregator = StreamAggregator(ThrottledFlush(write_partial, interval=self.flush_interval))

        try:
            result = await aggregator.consume(self.provider.stream(request))
        except ProtocolViolationError as e:
            logger.error(f"Run {state.run_id}: provider protocol violation: {e}")
            return {"passes": passes, "error": str(e), "outcome": "protocol_error", "next_step": "error"}
        except Exception as e:
            logger.error(f"Run {state.run_id}: generation failed: {e}", exc_info=True)
            return {"passes": passes, "error": str(e), "outcome": "error", "next_step": "error"}

        usage = LLMUsage(state.usage.input_tokens, state.usage.output_tokens)
        usage.add(result.usage)

        if isinstance(result, AssistantTurn):
            return {"passes": passes, "usage": usage, "final_text": result.text, "next_step": "finalize"}

        logger.info(f"Run {state.run_id}: model requested {[call.name for call in result.calls]}")
        return {
            "passes": passes,
            "usage": usage,
            "pending_calls": result.calls,
            "pending_text": result.text,
            "next_step": "tools",
        }

    async def tools_node(self, state: LoopState) -> dict[str, Any]:
        """Record the tool round, execute each call in order, open a new placeholder."""
        history = list(state.history)
        converted = False
        try:
            tool_calls = [call.as_dict() for call in state.pending_calls]
            state_fields = {
                "type": "state",
                "content": state.pending_text,
                "metadata": {"streaming": False, "toolCalls": tool_calls, "runId": state.run_id},
            }
            await self.transcript.update(state.placeholder_id, state_fields)
            converted = True
            history.append(
                ConversationMessage(
                    id=state.placeholder_id,
                    user_id=state.user_id,
                    role="assistant",
                    source=ASSISTANT_SOURCE,
                    **state_fields,
                )
            )

            for call in state.pending_calls:
                result = await self.dispatcher.invoke(call.name, call.arguments, state.principal, state.run_id, call.id)
                tool_message = ConversationMessage(
                    user_id=state.user_id,
                    role="tool",
                    type="tool",
                    content=result.content,
                    source=ASSISTANT_SOURCE,
                    tool_call_id=call.id,
                    metadata={"toolName": call.name, "error": result.is_error, "runId": state.run_id},
                )
                tool_message.id = await self.transcript.insert(tool_message)
                history.append(tool_message)

            new_placeholder_id = await self.transcript.insert(placeholder_message(state.user_id, state.run_id))
        except Exception as e:
            logger.error(f"Run {state.run_id}: tool round failed: {e}", exc_info=True)
            # the state record is no longer an open placeholder
            placeholder_id = None if converted else state.placeholder_id
            return {
                "history": history,
                "placeholder_id": placeholder_id,
                "error": str(e),
                "outcome": "error",
                "next_step": "error",
            }

        return {
            "history": history,
            "placeholder_id": new_placeholder_id,
            "pending_calls": [],
            "pending_text": "",
            "next_step": None,
        }

    async def finalize_node(self, state: LoopState) -> dict[str, Any]:
        """Write the final answer into the placeholder and notify in the background."""
        try:
            await self.transcript.update(
                state.placeholder_id,
                {
                    "content": state.final_text,
                    "metadata": {"streaming": False, "runId": state.run_id, "usage": state.usage.as_dict()},
                },
            )
        except Exception as e:
            logger.error(f"Run {state.run_id}: could not persist final answer: {e}", exc_info=True)
            return {"error": str(e), "outcome": "error", "next_step": "error"}

        if state.final_text:
            self.tasks.spawn(
                self.notifier.notify(state.user_id, f"🤖 Assistant response:\n\n{state.final_text}"),
                name=f"notify-{state.run_id}",
            )
        return {"outcome": "completed"}

    async def limit_node(self, state: LoopState) -> dict[str, Any]:
        """Finalize the open placeholder once the pass budget is spent."""
        logger.warning(f"Run {state.run_id}: tool loop limit of {state.max_passes} passes reached")
        try:
            await self.transcript.update(
                state.placeholder_id,
                {
                    "content": LIMIT_REACHED_MESSAGE,
                    "metadata": {"streaming": False, "error": True, "runId": state.run_id},
                },
            )
        except Exception as e:
            logger.error(f"Run {state.run_id}: could not finalize limit message: {e}", exc_info=True)
        return {"outcome": "iteration_limit", "final_text": LIMIT_REACHED_MESSAGE}

    async def error_node(self, state: LoopState) -> dict[str, Any]:
        """Finalize the open placeholder with the error text."""
        error = state.error or "Unknown error occurred"
        logger.error(f"Error handler invoked for run {state.run_id}: {error}")
        if state.placeholder_id:
            await finalize_with_error(self.transcript, state.placeholder_id, state.run_id, error)
        return {"outcome": state.outcome or "error", "final_text": f"Error: {error}"}
