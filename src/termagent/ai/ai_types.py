"""Shared typing contracts for AI infrastructure."""

from __future__ import annotations

from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from ..chat.message_model import Message


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


@runtime_checkable
class ConversationSummarizer(Protocol):
    """Condenses a dropped history prefix into a short summary."""

    async def summarize(self, messages: Sequence[Message]) -> str:
        ...


class CompletionBackend(Protocol):
    """Subset of :class:`~termagent.ai.client.AIClient` used for one-shot calls."""

    async def complete(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        temperature: float | None = ...,
        max_completion_tokens: int | None = ...,
    ) -> str:
        ...
