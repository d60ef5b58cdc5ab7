"""Tool-call loop graph and the controller that runs it."""

from dataclasses import dataclass, field
from typing import Any

from langgraph.graph import END, StateGraph

from micromanager.auth.verifier import Principal
from micromanager.clients.anthropic import GenerationProvider
from micromanager.graphs.edges import route_finalize_output, route_generate_output, route_tools_output
from micromanager.graphs.nodes import LoopNodes, finalize_with_error, placeholder_message
from micromanager.graphs.state import LoopState
from micromanager.models.conversation import RunOutcome
from micromanager.models.llm import LLMUsage
from micromanager.models.messages import ConversationMessage, MessageSource
from micromanager.services.notifications import Notifier
from micromanager.services.transcript import TranscriptStore
from micromanager.services.user_context import ContextStore, format_context_for_prompt
from micromanager.tools.dispatcher import ToolDispatcher
from micromanager.tools.registry import ToolsRegistry
from micromanager.utils.ids import new_id
from micromanager.utils.logging import get_logger
from micromanager.utils.tasks import DetachedTasks

logger = get_logger(__name__)


def create_tool_loop_graph(nodes: LoopNodes):
    """Create the tool-call loop graph.

    generate → (finalize | tools | error); tools → (generate | limit | error);
    finalize, limit and error end the run.

    Args:
        nodes: Node implementations bound to their collaborators

    Returns:
        Compiled LangGraph workflow
    """
    workflow = StateGraph(LoopState)

    workflow.add_node("generate", nodes.generate_node)
    workflow.add_node("tools", nodes.tools_node)
    workflow.add_node("finalize", nodes.finalize_node)
    workflow.add_node("limit", nodes.limit_node)
    workflow.add_node("error", nodes.error_node)

    workflow.set_entry_point("generate")

    workflow.add_conditional_edges(
        "generate",
        route_generate_output,
        {
            "tools": "tools",
            "finalize": "finalize",
            "error": "error",
        },
    )

    workflow.add_conditional_edges(
        "tools",
        route_tools_output,
        {
            "generate": "generate",
            "limit": "limit",
            "error": "error",
        },
    )

    workflow.add_conditional_edges(
        "finalize",
        route_finalize_output,
        {
            "error": "error",
            "end": END,
        },
    )

    workflow.add_edge("limit", END)
    workflow.add_edge("error", END)

    return workflow.compile()


@dataclass
class RunResult:
    """Outcome of one run, as reported to the caller."""

    run_id: str
    outcome: RunOutcome
    content: str
    message_id: str | None = None
    passes: int = 0
    usage: LLMUsage = field(default_factory=LLMUsage)
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == "completed"


class ToolLoopController:
    """Drives stream → tools → stream cycles for one inbound user message at a time.

    The controller persists the user message and an empty streaming placeholder
    before the first generation pass, then hands control to the loop graph. Any
    unexpected failure is caught here once, and the open placeholder is finalized
    with the error text. Cancellation is not caught: an aborted run leaves its
    placeholder as last flushed.
    """

    def __init__(
        self,
        provider: GenerationProvider,
        transcript: TranscriptStore,
        context_store: ContextStore,
        registry: ToolsRegistry,
        dispatcher: ToolDispatcher,
        notifier: Notifier,
        tasks: DetachedTasks | None = None,
        max_passes: int = 4,
        history_limit: int = 10,
        flush_interval: float = 1.0,
        model: str | None = None,
    ):
        if max_passes < 1:
            raise ValueError("max_passes must be at least 1")
        self.transcript = transcript
        self.context_store = context_store
        self.tasks = tasks or DetachedTasks()
        self.max_passes = max_passes
        self.history_limit = history_limit
        self.nodes = LoopNodes(
            provider=provider,
            transcript=transcript,
            registry=registry,
            dispatcher=dispatcher,
            notifier=notifier,
            tasks=self.tasks,
            flush_interval=flush_interval,
            model=model,
        )
        self.graph = create_tool_loop_graph(self.nodes)

    async def run(
        self,
        principal: Principal,
        message: str,
        run_id: str | None = None,
        source: MessageSource = "web-user",
    ) -> RunResult:
        """Process one user message to a final answer or a terminal failure."""
        run_id = run_id or principal.run_id or new_id("run")
        user_id = principal.client_id
        logger.info(f"Run {run_id} started for user {user_id}")

        placeholder_id: str | None = None
        try:
            await self.transcript.insert(
                ConversationMessage(user_id=user_id, role="user", content=message, source=source)
            )
            history = await self.transcript.list_recent(user_id, self.history_limit)
            document = await self.context_store.read(user_id)
            placeholder_id = await self.transcript.insert(placeholder_message(user_id, run_id))

            initial_state = LoopState(
                run_id=run_id,
                user_id=user_id,
                principal=principal,
                context_text=format_context_for_prompt(document),
                history=history,
                placeholder_id=placeholder_id,
                max_passes=self.max_passes,
            )
            final = await self.graph.ainvoke(initial_state.model_dump(), self._graph_config(run_id))
        except Exception as e:
            logger.error(f"Run {run_id} failed: {e}", exc_info=True)
            if placeholder_id:
                await finalize_with_error(self.transcript, placeholder_id, run_id, str(e))
            return RunResult(
                run_id=run_id, outcome="error", content=f"Error: {e}", message_id=placeholder_id, error=str(e)
            )

        result = self._to_result(run_id, final)
        logger.info(f"Run {run_id} finished for user {user_id}: outcome={result.outcome}, passes={result.passes}")
        return result

    def _graph_config(self, run_id: str) -> dict[str, Any]:
        # generate + tools per pass, plus the terminal node
        return {"recursion_limit": self.max_passes * 2 + 5, "run_name": run_id}

    @staticmethod
    def _to_result(run_id: str, final: dict[str, Any]) -> RunResult:
        usage = final.get("usage") or LLMUsage()
        if isinstance(usage, dict):
            usage = LLMUsage(**usage)
        return RunResult(
            run_id=run_id,
            outcome=final.get("outcome") or "error",
            content=final.get("final_text", ""),
            message_id=final.get("placeholder_id"),
            passes=final.get("passes", 0),
            usage=usage,
            error=final.get("error"),
        )
