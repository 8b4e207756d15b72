"""Keeps outgoing requests under the configured token ceiling."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Dict, List, Literal, Sequence

from ...chat.message_model import Message
from ..ai_types import ConversationSummarizer, TokenCounterProtocol
from ..client import ApproxByteCounter
from ..errors import ConfigurationError

__all__ = [
    "Budget",
    "BudgetResult",
    "BudgetVerdict",
    "ContextBudgetManager",
    "ROLE_OVERHEAD_TOKENS",
    "SUMMARY_HEADER",
]

LOGGER = logging.getLogger(__name__)

ROLE_OVERHEAD_TOKENS = 4
SUMMARY_HEADER = "[prior conversation summary]"
NEAR_LIMIT_RATIO = 0.9
MAX_SUMMARY_PASSES = 3

BudgetVerdict = Literal["ok", "trimmed", "system_overflow", "history_overflow"]


@dataclass(slots=True, frozen=True)
class Budget:
    """Token ceiling derived from the model context size and a utilization ratio."""

    max_context_tokens: int = 128_000
    target_ratio: float = 0.8
    max_allowed_tokens: int = field(init=False)

    def __post_init__(self) -> None:
        if self.max_context_tokens <= 0:
            raise ConfigurationError("max_context_tokens must be positive")
        if not 0 < self.target_ratio <= 1:
            raise ConfigurationError("target_ratio must be within (0, 1]")
        object.__setattr__(self, "max_allowed_tokens", math.floor(self.max_context_tokens * self.target_ratio))


@dataclass(slots=True, frozen=True)
class BudgetResult:
    """Outcome of fitting one request into the budget."""

    allowed_messages: tuple[Message, ...]
    total_tokens: int
    max_allowed_tokens: int
    dropped_count: int
    system_message: str
    summary: str | None = None
    verdict: BudgetVerdict = "ok"
    degraded: bool = False

    @property
    def trimmed(self) -> bool:
        return self.dropped_count > 0

    def raise_for_verdict(self) -> None:
        if self.verdict == "system_overflow":
            raise ConfigurationError(
                f"System message alone needs {self.total_tokens} tokens; "
                f"the budget allows {self.max_allowed_tokens}"
            )
        if self.verdict == "history_overflow":
            raise ConfigurationError(
                "The current exchange no longer fits the context budget "
                f"({self.max_allowed_tokens} tokens); start a new conversation or raise max_context_tokens"
            )

    def as_payload(self) -> dict[str, object]:
        return {
            "verdict": self.verdict,
            "total_tokens": int(self.total_tokens),
            "max_allowed_tokens": int(self.max_allowed_tokens),
            "dropped_count": int(self.dropped_count),
            "kept_count": len(self.allowed_messages),
            "summarized": self.summary is not None,
            "degraded": self.degraded,
        }


class ContextBudgetManager:
    """Selects the history slice sent with each request.

    Token accounting is synchronous and cached per message id. In quality mode a
    summarizer condenses the dropped prefix into the system message; without one
    the prefix is simply dropped.
    """

    def __init__(
        self,
        budget: Budget,
        *,
        counter: TokenCounterProtocol | None = None,
        summarizer: ConversationSummarizer | None = None,
    ) -> None:
        self._budget = budget
        self._counter = counter or ApproxByteCounter()
        self._summarizer = summarizer
        self._costs: Dict[int, int] = {}
        self._summaries: Dict[int, str] = {}
        self.last_result: BudgetResult | None = None

    @property
    def budget(self) -> Budget:
        return self._budget

    @property
    def summarizer(self) -> ConversationSummarizer | None:
        return self._summarizer

    def message_tokens(self, message: Message) -> int:
        if message.id >= 0:
            cached = self._costs.get(message.id)
            if cached is not None:
                return cached
        cost = self._counter.count(message.token_text()) + ROLE_OVERHEAD_TOKENS
        if message.id >= 0:
            self._costs[message.id] = cost
        return cost

    def system_tokens(self, system_message: str) -> int:
        return self._counter.count(system_message) + ROLE_OVERHEAD_TOKENS

    def plan(self, messages: Sequence[Message], system_message: str) -> BudgetResult:
        """Fit *messages* by dropping a prefix that ends at a user-message boundary."""

        limit = self._budget.max_allowed_tokens
        system_cost = self.system_tokens(system_message)
        if system_cost > limit:
            LOGGER.error("System message (%s tokens) exceeds the budget of %s", system_cost, limit)
            return BudgetResult(
                allowed_messages=(),
                total_tokens=system_cost,
                max_allowed_tokens=limit,
                dropped_count=len(messages),
                system_message=system_message,
                verdict="system_overflow",
            )

        costs = [self.message_tokens(message) for message in messages]
        total = system_cost + sum(costs)
        if total <= limit:
            return BudgetResult(
                allowed_messages=tuple(messages),
                total_tokens=total,
                max_allowed_tokens=limit,
                dropped_count=0,
                system_message=system_message,
            )

        cut = _find_cut(messages, costs, surplus=total - limit)
        kept = tuple(messages[cut:])
        kept_total = system_cost + sum(costs[cut:])
        verdict: BudgetVerdict = "trimmed" if kept else "history_overflow"
        LOGGER.debug(
            "Context trimmed: dropped %s of %s message(s), %s -> %s tokens (limit %s)",
            cut,
            len(messages),
            total,
            kept_total,
            limit,
        )
        return BudgetResult(
            allowed_messages=kept,
            total_tokens=kept_total,
            max_allowed_tokens=limit,
            dropped_count=cut,
            system_message=system_message,
            verdict=verdict,
        )

    async def select(self, messages: Sequence[Message], system_message: str) -> BudgetResult:
        """Plan the request and, in quality mode, summarize the dropped prefix.

        The summary grows the system message, which can push the cut further
        forward; the prefix is summarized again until the cut settles.
        """

        result = self.plan(messages, system_message)
        if result.verdict != "trimmed" or self._summarizer is None:
            self.last_result = result
            return result

        cut = result.dropped_count
        for _ in range(MAX_SUMMARY_PASSES):
            summary = await self._summary_for(list(messages[:cut]))
            if summary is None:
                return self._remember(replace(result, degraded=True))
            if not summary:
                return self._remember(result)
            enriched_system = f"{system_message}\n\n{SUMMARY_HEADER}\n{summary}"
            refit = self.plan(messages, enriched_system)
            if refit.verdict != "trimmed":
                LOGGER.warning("Conversation summary does not fit the budget; dropping history instead")
                return self._remember(replace(result, degraded=True))
            if refit.dropped_count <= cut:
                return self._remember(self._slice(messages, enriched_system, cut, summary=summary))
            LOGGER.debug("Summary moved the cut from %s to %s; summarizing again", cut, refit.dropped_count)
            cut = refit.dropped_count
        LOGGER.warning("Conversation summary did not settle; dropping history instead")
        return self._remember(replace(result, degraded=True))

    def usage_snapshot(self) -> dict[str, object]:
        """Return context usage figures for presentation."""

        limit = self._budget.max_allowed_tokens
        used = self.last_result.total_tokens if self.last_result else 0
        percentage = round(used / limit * 100, 1) if limit else 0.0
        return {
            "max_context": self._budget.max_context_tokens,
            "max_allowed": limit,
            "used": used,
            "remaining": max(0, limit - used),
            "percentage": percentage,
            "near_limit": used >= limit * NEAR_LIMIT_RATIO,
        }

    def reset(self) -> None:
        self._costs.clear()
        self._summaries.clear()
        self.last_result = None

    def _slice(self, messages: Sequence[Message], system_message: str, cut: int, *, summary: str) -> BudgetResult:
        kept = tuple(messages[cut:])
        return BudgetResult(
            allowed_messages=kept,
            total_tokens=self.system_tokens(system_message) + sum(self.message_tokens(message) for message in kept),
            max_allowed_tokens=self._budget.max_allowed_tokens,
            dropped_count=cut,
            system_message=system_message,
            summary=summary,
            verdict="trimmed",
        )

    def _remember(self, result: BudgetResult) -> BudgetResult:
        self.last_result = result
        return result

    async def _summary_for(self, dropped: List[Message]) -> str | None:
        key = dropped[-1].id
        cached = self._summaries.get(key)
        if cached is not None:
            return cached
        assert self._summarizer is not None
        try:
            summary = (await self._summarizer.summarize(dropped)).strip()
        except Exception as exc:
            LOGGER.warning("History summarization failed; falling back to drop: %s", exc)
            return None
        if key >= 0:
            self._summaries[key] = summary
        return summary


def _find_cut(messages: Sequence[Message], costs: Sequence[int], *, surplus: int) -> int:
    index = 0
    covered = 0
    while index < len(messages) and covered < surplus:
        covered += costs[index]
        index += 1
    while index < len(messages) and messages[index].type != "user":
        index += 1
    return index
