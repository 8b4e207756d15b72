"""Reassembles structured assistant messages from a completion stream.

Tool-call arguments arrive as fragments of one JSON document. They are
concatenated verbatim and never parsed here; the tool layer parses them once
the call is complete.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, Callable, Dict, List, Literal

from ...chat.message_model import AssistantMessage, ToolCall
from ..client import Finish, ReasoningDelta, StreamEvent, TextDelta, ToolCallDelta

__all__ = ["AssembledResponse", "StreamingResponseAssembler", "StreamListener"]

LOGGER = logging.getLogger(__name__)

ResponseStatus = Literal["done", "tool_calls"]
StreamListener = Callable[[StreamEvent], Any]


@dataclass(slots=True, frozen=True)
class AssembledResponse:
    """Finalized result of one streamed completion."""

    status: ResponseStatus
    content: str = ""
    reasoning: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    finish_reason: str | None = None

    def to_message(self) -> AssistantMessage:
        return AssistantMessage(
            content=self.content,
            tool_calls=self.tool_calls,
            reasoning=self.reasoning or None,
        )


@dataclass(slots=True)
class _ToolCallAccumulator:
    index: int
    id: str
    name: str = ""
    arguments: str = ""

    def finalize(self) -> ToolCall:
        return ToolCall(id=self.id, name=self.name, arguments=self.arguments)


class StreamingResponseAssembler:
    """Single-consumer accumulator for :mod:`termagent.ai.client` stream events."""

    def __init__(self) -> None:
        self._text: List[str] = []
        self._reasoning: List[str] = []
        self._calls: List[_ToolCallAccumulator] = []
        self._by_id: Dict[str, _ToolCallAccumulator] = {}
        self._open: _ToolCallAccumulator | None = None
        self._finish_reason: str | None = None

    @property
    def content(self) -> str:
        return "".join(self._text)

    @property
    def reasoning(self) -> str:
        return "".join(self._reasoning)

    @property
    def finish_reason(self) -> str | None:
        return self._finish_reason

    @property
    def is_empty(self) -> bool:
        """True when neither text nor any tool call has been assembled."""

        return not self._text and not self._calls

    def feed(self, event: StreamEvent) -> None:
        if isinstance(event, TextDelta):
            if event.text:
                self._text.append(event.text)
        elif isinstance(event, ReasoningDelta):
            if event.text:
                self._reasoning.append(event.text)
        elif isinstance(event, ToolCallDelta):
            self._feed_tool_call(event)
        elif isinstance(event, Finish):
            self._finish_reason = event.reason
        else:
            raise TypeError(f"Unsupported stream event: {event!r}")

    def result(self) -> AssembledResponse:
        """Finalize any open tool call and return the assembled response.

        A ``tool_calls`` finish, or any other end of stream while a call is still
        open, yields ``status="tool_calls"``.
        """

        self._open = None
        calls = tuple(accumulator.finalize() for accumulator in self._calls)
        if self._finish_reason == "tool_calls" and not calls:
            LOGGER.warning("Stream finished with tool_calls but no tool call was announced")
        return AssembledResponse(
            status="tool_calls" if calls else "done",
            content=self.content,
            reasoning=self.reasoning,
            tool_calls=calls,
            finish_reason=self._finish_reason,
        )

    async def consume(
        self,
        events: AsyncIterable[StreamEvent],
        listener: StreamListener | None = None,
    ) -> AssembledResponse:
        """Drive :meth:`feed` over *events*; transport errors propagate unchanged."""

        async for event in events:
            self.feed(event)
            if listener is not None:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
        return self.result()

    def _feed_tool_call(self, delta: ToolCallDelta) -> None:
        current = self._open
        if delta.id and (current is None or delta.id != current.id):
            self._open = self._accumulator_for(delta.index, delta.id)
        elif current is None or (not delta.id and delta.index != current.index):
            self._open = self._accumulator_for(delta.index, None)
        accumulator = self._open
        assert accumulator is not None
        if delta.name:
            accumulator.name += delta.name
        if delta.arguments:
            accumulator.arguments += delta.arguments

    def _accumulator_for(self, index: int, call_id: str | None) -> _ToolCallAccumulator:
        """Return the call a delta belongs to, opening a new one when unseen.

        A repeated id (or, for id-less deltas, a repeated index) resumes the
        earlier call so the message never carries the same id twice.
        """

        if call_id is None:
            call_id = f"call_{index}"
            existing = next((item for item in self._calls if item.index == index), None) or self._by_id.get(call_id)
        else:
            existing = self._by_id.get(call_id)
        if existing is not None:
            if existing is not self._open:
                LOGGER.debug("Tool call %s resumed after another call", existing.id)
            return existing
        accumulator = _ToolCallAccumulator(index=index, id=call_id)
        self._calls.append(accumulator)
        self._by_id[call_id] = accumulator
        return accumulator
