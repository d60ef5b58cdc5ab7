"""State definitions for the tool-call loop graph."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from micromanager.auth.verifier import Principal
from micromanager.models.conversation import RunOutcome
from micromanager.models.llm import LLMUsage, ToolCallRequest
from micromanager.models.messages import ConversationMessage


class LoopState(BaseModel):
    """State carried through one run of the tool-call loop.

    ``history`` is the transcript the next generation pass sees; tool rounds
    append to it. ``placeholder_id`` always names the assistant message that is
    currently open (``streaming: true``) in the transcript store.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    run_id: str
    user_id: str
    principal: Principal
    context_text: str = ""
    history: list[ConversationMessage] = Field(default_factory=list)
    placeholder_id: str | None = None

    # Tool round in progress
    pending_calls: list[ToolCallRequest] = Field(default_factory=list)
    pending_text: str = ""

    # Control flow
    passes: int = 0
    max_passes: int = 4
    next_step: Literal["tools", "finalize", "error"] | None = None
    outcome: RunOutcome | None = None
    final_text: str = ""
    error: str | None = None

    usage: LLMUsage = Field(default_factory=LLMUsage)
