"""User approval for sensitive tool calls."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Sequence, Union

from ...chat.message_model import ToolCall
from ..mcp.types import ToolDefinition
from ..tools.diff_builder import build_unified_diff
from ..tools.types import ChangePreview

__all__ = [
    "ApprovalDecision",
    "ApprovalRequest",
    "ApprovalGate",
    "ApprovalPrompt",
    "parse_response",
    "rejection_payload",
]

LOGGER = logging.getLogger(__name__)


class ApprovalDecision(str, Enum):
    YES = "yes"
    NO = "no"
    CANCEL = "cancel"


_RESPONSES: Dict[str, ApprovalDecision] = {
    "": ApprovalDecision.YES,
    "y": ApprovalDecision.YES,
    "yes": ApprovalDecision.YES,
    "ok": ApprovalDecision.YES,
    "n": ApprovalDecision.NO,
    "no": ApprovalDecision.NO,
    "c": ApprovalDecision.CANCEL,
    "cancel": ApprovalDecision.CANCEL,
    "q": ApprovalDecision.CANCEL,
}


def parse_response(text: str | None) -> ApprovalDecision | None:
    """Map a typed answer to a decision; ``None`` means unrecognized."""

    if text is None:
        return None
    return _RESPONSES.get(text.strip().lower())


@dataclass(slots=True, frozen=True)
class ApprovalRequest:
    """Everything the presentation needs to ask about one tool call."""

    call: ToolCall
    definition: ToolDefinition | None
    arguments: Mapping[str, Any]
    diff: str | None = None

    @property
    def description(self) -> str:
        return self.describe()

    def describe(self) -> str:
        parameters = json.dumps(dict(self.arguments), indent=2, ensure_ascii=False, default=str)
        return f"Tool: {self.call.name}\nParameters:\n{parameters}"


PromptResult = Union[str, ApprovalDecision, None]
ApprovalPrompt = Callable[[ApprovalRequest], Union[PromptResult, Awaitable[PromptResult]]]


def rejection_payload(tool_name: str, reason: str = "The user declined to run this tool.") -> Dict[str, Any]:
    return {"error": "rejected", "rejected": True, "tool": tool_name, "reason": reason}


class ApprovalGate:
    """Decides which calls need approval and asks the presentation for it.

    Args:
        prompt: Callable receiving an :class:`ApprovalRequest` and returning the
            typed answer (or a decision); may be sync or async. Without a prompt,
            calls that need approval are refused.
        confirm_tools: Qualified names that always require approval.
        auto_approve: Skip approval for every tool.
        max_prompts: How many unrecognized answers are tolerated before refusing.
    """

    def __init__(
        self,
        prompt: ApprovalPrompt | None = None,
        *,
        confirm_tools: Sequence[str] = (),
        auto_approve: bool = False,
        max_prompts: int = 3,
    ) -> None:
        self._prompt = prompt
        self._confirm_tools = set(confirm_tools)
        self.auto_approve = auto_approve
        self.max_prompts = max(1, max_prompts)

    def requires_confirmation(self, definition: ToolDefinition | None) -> bool:
        if self.auto_approve or definition is None:
            return False
        return definition.requires_confirmation or definition.qualified_name in self._confirm_tools

    def build_request(
        self,
        call: ToolCall,
        definition: ToolDefinition | None,
        arguments: Mapping[str, Any],
        preview: ChangePreview | None = None,
    ) -> ApprovalRequest:
        diff = None
        if preview is not None:
            diff = build_unified_diff(preview.old_text, preview.new_text, filename=preview.path) or None
        return ApprovalRequest(call=call, definition=definition, arguments=dict(arguments), diff=diff)

    async def review(self, request: ApprovalRequest) -> ApprovalDecision:
        if self._prompt is None:
            LOGGER.info("No approval prompt available; refusing %s", request.call.name)
            return ApprovalDecision.NO
        for attempt in range(1, self.max_prompts + 1):
            answer = self._prompt(request)
            if inspect.isawaitable(answer):
                answer = await answer
            decision = answer if isinstance(answer, ApprovalDecision) else parse_response(answer)
            if decision is not None:
                LOGGER.debug("Approval for %s: %s", request.call.name, decision.value)
                return decision
            LOGGER.debug("Unrecognized approval answer %r (attempt %d)", answer, attempt)
        return ApprovalDecision.NO
