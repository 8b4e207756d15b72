"""Append-only conversation log."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, Iterable, Iterator, List, Sequence

from ..ai.errors import ConversationIntegrityError
from .message_model import AssistantMessage, Message, SystemMessage, ToolCall, ToolMessage, UserMessage

__all__ = ["ConversationLog"]

LOGGER = logging.getLogger(__name__)


class ConversationLog:
    """Arena of messages addressed by integer ids.

    Tool results reference tool calls by id only. The log rejects appends that
    would leave a tool call without exactly one result before the next user
    message, or that would answer a call the latest assistant message never made.
    System messages are composed per request and never stored here.
    """

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: List[Message] = []
        self._pending: Dict[str, ToolCall] = {}
        self.token_usage = 0
        for message in messages:
            self.append(message)

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def append(self, message: Message) -> Message:
        """Validate *message*, assign its id, and store it."""

        self._check(message)
        stored = replace(message, id=len(self._messages))
        self._messages.append(stored)
        if isinstance(stored, AssistantMessage):
            self._pending = {call.id: call for call in stored.tool_calls}
        elif isinstance(stored, ToolMessage):
            self._pending.pop(stored.tool_call_id, None)
        LOGGER.debug("Appended %s message #%s", stored.type, stored.id)
        return stored

    def extend(self, messages: Iterable[Message]) -> List[Message]:
        return [self.append(message) for message in messages]

    def pending_tool_calls(self) -> tuple[ToolCall, ...]:
        """Return calls of the latest assistant message that still lack a result."""

        return tuple(self._pending.values())

    def pending_tool_call_ids(self) -> tuple[str, ...]:
        return tuple(self._pending)

    def last_assistant(self) -> AssistantMessage | None:
        for message in reversed(self._messages):
            if isinstance(message, AssistantMessage):
                return message
        return None

    def since(self, index: int) -> tuple[Message, ...]:
        return tuple(self._messages[index:])

    def _check(self, message: Message) -> None:
        if isinstance(message, SystemMessage):
            raise ConversationIntegrityError("System messages are composed per request and cannot be logged")
        if not self._messages and not isinstance(message, UserMessage):
            raise ConversationIntegrityError("A conversation must start with a user message")
        if isinstance(message, ToolMessage):
            if message.tool_call_id not in self._pending:
                raise ConversationIntegrityError(
                    f"Tool result {message.tool_call_id!r} does not answer a pending tool call"
                )
            return
        if self._pending:
            raise ConversationIntegrityError(
                f"Cannot append a {message.type} message while tool calls are unanswered: "
                f"{', '.join(self._pending)}"
            )
        if isinstance(message, AssistantMessage):
            _check_unique_ids(message.tool_calls)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]


def _check_unique_ids(calls: Sequence[ToolCall]) -> None:
    seen: set[str] = set()
    for call in calls:
        if call.id in seen:
            raise ConversationIntegrityError(f"Duplicate tool call id {call.id!r} in one assistant message")
        seen.add(call.id)
