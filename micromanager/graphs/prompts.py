"""System prompt and transcript-to-provider message conversion."""

import json
from datetime import UTC, datetime
from typing import Any

from micromanager.models.llm import ContentBlock, LLMMessage, TextBlock, ToolResultBlock, ToolUseBlock
from micromanager.models.messages import ConversationMessage
from micromanager.utils.logging import get_logger

logger = get_logger(__name__)


def build_system_prompt(context_text: str, now: datetime | None = None) -> str:
    """Generate the system prompt for a run.

    Args:
        context_text: Rendered snapshot of the user's context document
        now: Current time, defaults to the wall clock

    Returns:
        System prompt string
    """
    now = now or datetime.now(UTC)
    return f"""You are Micromanager, a personal assistant that keeps track of the user's life.

Your responsibilities:
1. Answer questions using the user's saved context, calendar and tasks
2. Keep the user's context document current when you learn something new about them
3. Create and remove events and tasks only when the user asks for it

Rules:
- Use tools to look things up instead of guessing
- If a tool reports that access is denied or that an account is not linked, tell the user plainly
- Keep answers short

Current date and time (UTC): {now.strftime('%Y-%m-%d %H:%M:%S')}

What you know about the user:
{context_text}"""


def _tool_input(arguments: Any) -> dict[str, Any]:
    if isinstance(arguments, dict):
        return arguments
    if not isinstance(arguments, str) or not arguments.strip():
        return {}
    try:
        value = json.loads(arguments)
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


def _append(messages: list[LLMMessage], role: str, content: str | list[ContentBlock]) -> None:
    """Append a message, merging into the previous one when the role repeats."""
    if not messages or messages[-1].role != role:
        messages.append(LLMMessage(role=role, content=content))
        return

    previous = messages[-1]
    merged: list[ContentBlock] = []
    for part in (previous.content, content):
        merged.extend([TextBlock(text=part)] if isinstance(part, str) else part)
    messages[-1] = LLMMessage(role=role, content=merged)


class _ToolRound:
    """An assistant tool-call record and the results answering it."""

    def __init__(self, message: ConversationMessage):
        self.text = message.content
        self.calls = [call for call in message.metadata.get("toolCalls", []) if call.get("id") and call.get("name")]
        self.results: dict[str, ToolResultBlock] = {}

    def accepts(self, message: ConversationMessage) -> bool:
        return message.tool_call_id is not None and any(call["id"] == message.tool_call_id for call in self.calls)

    def add(self, message: ConversationMessage) -> None:
        self.results[message.tool_call_id] = ToolResultBlock(
            tool_use_id=message.tool_call_id, content=message.content, is_error=message.is_error
        )

    def emit(self, messages: list[LLMMessage]) -> None:
        answered = [call for call in self.calls if call["id"] in self.results]
        if len(answered) < len(self.calls):
            logger.debug(f"Dropping {len(self.calls) - len(answered)} unanswered tool calls from history")

        blocks: list[ContentBlock] = []
        if self.text:
            blocks.append(TextBlock(text=self.text))
        blocks.extend(
            ToolUseBlock(id=call["id"], name=call["name"], input=_tool_input(call.get("arguments")))
            for call in answered
        )
        if not blocks:
            return
        _append(messages, "assistant", blocks)
        if answered:
            _append(messages, "user", [self.results[call["id"]] for call in answered])


def transcript_to_llm_messages(transcript: list[ConversationMessage]) -> list[LLMMessage]:
    """Convert stored transcript messages into provider messages.

    Assistant ``state`` records become ``tool_use`` blocks and the tool messages
    answering them one merged user turn of ``tool_result`` blocks. Messages that
    are still streaming, error-finalized assistant messages, orphan tool results
    and anything before the first user message are left out.
    """
    messages: list[LLMMessage] = []
    current_round: _ToolRound | None = None

    for message in transcript:
        if message.streaming or message.role == "system":
            continue

        if message.type == "tool":
            if current_round is not None and current_round.accepts(message):
                current_round.add(message)
            else:
                logger.debug(f"Skipping orphan tool result for call {message.tool_call_id}")
            continue

        if current_round is not None:
            current_round.emit(messages)
            current_round = None

        if message.type == "state":
            if messages:
                current_round = _ToolRound(message)
            continue

        if not message.content:
            continue
        if message.role == "user":
            _append(messages, "user", message.content)
        elif message.role == "assistant" and messages and not message.is_error:
            _append(messages, "assistant", message.content)

    if current_round is not None:
        current_round.emit(messages)

    return messages
