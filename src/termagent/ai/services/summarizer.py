"""History summarizer used by the context budget manager in quality mode."""

from __future__ import annotations

import logging
import re
from typing import List, Sequence

from ...chat.message_model import AssistantMessage, Message, ToolMessage, UserMessage
from ..ai_types import CompletionBackend

__all__ = ["CompletionSummarizer", "condense_text", "render_transcript"]

LOGGER = logging.getLogger(__name__)

_MESSAGE_CHAR_LIMIT = 2_000
_TOOL_CHAR_LIMIT = 600
_TRANSCRIPT_CHAR_LIMIT = 48_000
_SUMMARY_TOKEN_LIMIT = 800

SUMMARY_INSTRUCTIONS = (
    "You compress earlier parts of a conversation between a user and a coding assistant. "
    "Write a concise summary that keeps the user's goals, decisions made, files touched, "
    "commands run with their outcomes, and any open tasks. Use short bullet points. "
    "Do not invent details that are not in the transcript."
)


def condense_text(text: str, *, max_chars: int) -> str:
    """Collapse whitespace and cut *text* near a sentence boundary."""

    stripped = text.strip()
    if not stripped:
        return "(empty)"
    condensed = " ".join(stripped.split())
    if len(condensed) <= max_chars:
        return condensed
    sentences = re.split(r"(?<=[.!?])\s+", condensed)
    parts: List[str] = []
    total = 0
    for sentence in sentences:
        fragment = sentence.strip()
        if not fragment:
            continue
        if parts and total + len(fragment) + 1 > max_chars:
            break
        parts.append(fragment)
        total += len(fragment) + 1
    summary = " ".join(parts) or condensed
    if len(summary) > max_chars:
        summary = f"{summary[: max_chars - 3].rstrip()}..."
    return summary


def render_transcript(
    messages: Sequence[Message],
    *,
    message_limit: int = _MESSAGE_CHAR_LIMIT,
    tool_limit: int = _TOOL_CHAR_LIMIT,
    total_limit: int = _TRANSCRIPT_CHAR_LIMIT,
) -> str:
    """Render *messages* as a plain transcript, shortening long payloads."""

    lines: List[str] = []
    for message in messages:
        if isinstance(message, UserMessage):
            attached = [item.path for item in message.attachments]
            suffix = f" (attached: {', '.join(attached)})" if attached else ""
            lines.append(f"USER{suffix}: {condense_text(message.content, max_chars=message_limit)}")
        elif isinstance(message, AssistantMessage):
            if message.content:
                lines.append(f"ASSISTANT: {condense_text(message.content, max_chars=message_limit)}")
            for call in message.tool_calls:
                arguments = condense_text(call.arguments or "{}", max_chars=tool_limit)
                lines.append(f"ASSISTANT called {call.name} {arguments}")
        elif isinstance(message, ToolMessage):
            status = "error" if message.is_error else "result"
            lines.append(f"TOOL {message.name} {status}: {condense_text(message.content, max_chars=tool_limit)}")
    transcript = "\n".join(lines)
    if len(transcript) > total_limit:
        # Keep the most recent part of the dropped history.
        transcript = transcript[-total_limit:]
    return transcript


class CompletionSummarizer:
    """Summarizes a dropped history prefix with one non-streaming completion."""

    def __init__(
        self,
        backend: CompletionBackend,
        *,
        instructions: str = SUMMARY_INSTRUCTIONS,
        max_completion_tokens: int | None = _SUMMARY_TOKEN_LIMIT,
    ) -> None:
        self._backend = backend
        self._instructions = instructions
        self._max_completion_tokens = max_completion_tokens

    async def summarize(self, messages: Sequence[Message]) -> str:
        if not messages:
            return ""
        transcript = render_transcript(messages)
        LOGGER.debug("Summarizing %s message(s) (%s chars)", len(messages), len(transcript))
        return await self._backend.complete(
            [
                {"role": "system", "content": self._instructions},
                {"role": "user", "content": transcript},
            ],
            temperature=0.0,
            max_completion_tokens=self._max_completion_tokens,
        )
