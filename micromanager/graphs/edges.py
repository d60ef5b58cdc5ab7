"""Edge logic and routing for the tool-call loop graph."""

from typing import Literal

from micromanager.graphs.state import LoopState
from micromanager.utils.logging import get_logger

logger = get_logger(__name__)


def route_generate_output(state: LoopState) -> Literal["tools", "finalize", "error"]:
    """Route from the generation node on the shape of the finished turn."""
    if state.error or state.next_step == "error":
        logger.warning(f"Routing to error handler due to: {state.error}")
        return "error"
    if state.next_step == "tools" and state.pending_calls:
        return "tools"
    return "finalize"


def route_tools_output(state: LoopState) -> Literal["generate", "limit", "error"]:
    """Route from tool execution: back to generation unless the pass budget is spent.

    The budget is checked before every generation after the first, so a run makes
    at most ``max_passes`` generation passes.
    """
    if state.error:
        return "error"
    if state.passes >= state.max_passes:
        return "limit"
    return "generate"


def route_finalize_output(state: LoopState) -> Literal["error", "end"]:
    """Route from finalization; a failed final write still ends in the error handler."""
    if state.error:
        return "error"
    return "end"
