"""Conversation orchestrator: drives one user turn through the tool loop.

State machine per turn::

    IDLE -> BUILDING_REQUEST -> STREAMING -> DONE -> IDLE
                                          -> AWAITING_TOOLS -> EXECUTING_TOOLS -> BUILDING_REQUEST

Every tool call of an assistant message receives exactly one ``tool`` message
before the turn ends, whether it ran, was rejected, hit the per-turn cap, or
was abandoned by a cancellation.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Literal, Sequence, TypeVar

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_incrementing

from ...chat.conversation import ConversationLog
from ...chat.message_model import (
    AssistantMessage,
    Attachment,
    Message,
    SystemMessage,
    ToolCall,
    ToolMessage,
    UserMessage,
)
from ..client import AIClient, ReasoningDelta, StreamEvent, TextDelta
from ..errors import (
    AgentError,
    ConfigurationError,
    ConversationIntegrityError,
    SchemaError,
    StreamError,
    TurnCancelled,
)
from ..mcp.gateway import ToolProtocolGateway
from ..mcp.types import ToolOutcome
from ..prompts import SystemPromptBuilder
from .approval import ApprovalDecision, ApprovalGate, rejection_payload
from .context_budget import BudgetResult, ContextBudgetManager
from .stream_assembler import AssembledResponse, StreamingResponseAssembler

__all__ = [
    "ConversationOrchestrator",
    "OrchestratorConfig",
    "TurnCallbacks",
    "TurnOutcome",
    "TurnState",
]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
TurnStatus = Literal["done", "truncated", "cancelled", "error"]


class TurnState(str, Enum):
    IDLE = "idle"
    BUILDING_REQUEST = "building_request"
    STREAMING = "streaming"
    AWAITING_TOOLS = "awaiting_tools"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"


@dataclass(slots=True, frozen=True)
class OrchestratorConfig:
    """Tunables for the tool loop.

    Attributes:
        max_tool_calls_per_turn: Tool calls (including rejected ones) allowed per user turn.
        stream_retry_attempts: Total attempts for a stream that fails before producing output.
        stream_retry_backoff_seconds: Linear backoff step between stream attempts.
        temperature: Sampling temperature forwarded to the completion service.
        max_completion_tokens: Optional completion cap forwarded to the service.
    """

    max_tool_calls_per_turn: int = 25
    stream_retry_attempts: int = 3
    stream_retry_backoff_seconds: float = 1.0
    temperature: float | None = 0.2
    max_completion_tokens: int | None = None


@dataclass(slots=True)
class TurnCallbacks:
    """Notification hooks for the presentation layer; sync or async, return values ignored."""

    on_text_chunk: Callable[[str], Any] | None = None
    on_reasoning_chunk: Callable[[str], Any] | None = None
    on_assistant_message: Callable[[AssistantMessage], Any] | None = None
    on_tool_call_started: Callable[[ToolCall], Any] | None = None
    on_tool_call_result: Callable[[ToolCall, ToolMessage], Any] | None = None
    on_error: Callable[[BaseException], Any] | None = None


@dataclass(slots=True, frozen=True)
class TurnOutcome:
    status: TurnStatus
    messages: tuple[Message, ...] = ()
    tool_calls_executed: int = 0
    error: BaseException | None = None
    budget: BudgetResult | None = None


@dataclass(slots=True)
class _Request:
    messages: List[Dict[str, Any]]
    tools: List[Dict[str, Any]]
    budget: BudgetResult


@dataclass(slots=True)
class _TurnProgress:
    executed: int = 0
    budget: BudgetResult | None = None
    truncated: bool = False
    started_at: int = 0


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, StreamError) and not exc.partial


class ConversationOrchestrator:
    """Runs user turns against the completion service and the tool gateway."""

    def __init__(
        self,
        client: AIClient,
        gateway: ToolProtocolGateway,
        budget_manager: ContextBudgetManager,
        *,
        prompt_builder: SystemPromptBuilder | None = None,
        approval_gate: ApprovalGate | None = None,
        config: OrchestratorConfig | None = None,
        callbacks: TurnCallbacks | None = None,
        should_interrupt: Callable[[], bool] | None = None,
        log: ConversationLog | None = None,
    ) -> None:
        self._client = client
        self._gateway = gateway
        self._budget = budget_manager
        self._prompt_builder = prompt_builder or SystemPromptBuilder()
        self._approval = approval_gate or ApprovalGate()
        self._config = config or OrchestratorConfig()
        self.callbacks = callbacks or TurnCallbacks()
        self._should_interrupt = should_interrupt
        self._log = log or ConversationLog()
        self._state = TurnState.IDLE
        self._cancel_requested = False
        self._inflight: asyncio.Future[Any] | None = None
        self._busy = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def log(self) -> ConversationLog:
        return self._log

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def gateway(self) -> ToolProtocolGateway:
        return self._gateway

    @property
    def budget_manager(self) -> ContextBudgetManager:
        return self._budget

    def usage(self) -> Dict[str, object]:
        snapshot = self._budget.usage_snapshot()
        snapshot["last_request_tokens"] = self._log.token_usage
        return snapshot

    def cancel(self) -> None:
        """Request cancellation of the running turn; in-flight awaits are abandoned."""

        if not self._busy:
            return
        self._cancel_requested = True
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            inflight.cancel()
        LOGGER.debug("Cancellation requested in state %s", self._state.value)

    def reset(self) -> None:
        """Start a fresh conversation."""

        if self._busy:
            raise AgentError("Cannot reset while a turn is running")
        self._log = ConversationLog()
        self._budget.reset()
        self._cancel_requested = False

    async def process_turn(self, user_text: str, attachments: Sequence[Attachment] = ()) -> TurnOutcome:
        """Run one user turn to completion, truncation, cancellation, or error."""

        if self._busy:
            raise AgentError("A turn is already running")
        self._busy = True
        self._cancel_requested = False
        progress = _TurnProgress(started_at=len(self._log))
        status: TurnStatus = "done"
        error: BaseException | None = None
        try:
            self._log.append(UserMessage(content=user_text, attachments=tuple(attachments)))
            await self._run_loop(progress)
            if progress.truncated:
                status = "truncated"
        except TurnCancelled as exc:
            LOGGER.info("Turn cancelled: %s", exc)
            status = "cancelled"
            self._answer_pending("cancelled", "The turn was cancelled before this tool ran.")
        except (StreamError, ConfigurationError, ConversationIntegrityError) as exc:
            LOGGER.error("Turn failed: %s", exc)
            status = "error"
            error = exc
            self._answer_pending("not_executed", "The turn ended with an error before this tool ran.")
            await self._emit("on_error", exc)
        finally:
            self._answer_pending("interrupted", "The turn was interrupted before this tool ran.")
            self._set_state(TurnState.IDLE)
            self._inflight = None
            self._busy = False
        return TurnOutcome(
            status=status,
            messages=self._log.since(progress.started_at),
            tool_calls_executed=progress.executed,
            error=error,
            budget=progress.budget,
        )

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------

    async def _run_loop(self, progress: _TurnProgress) -> None:
        while True:
            self._set_state(TurnState.BUILDING_REQUEST)
            request = await self._build_request()
            progress.budget = request.budget

            self._set_state(TurnState.STREAMING)
            response = await self._stream_with_retry(request)
            message = self._log.append(response.to_message())
            await self._emit("on_assistant_message", message)
            assert isinstance(message, AssistantMessage)

            if response.status == "done":
                self._set_state(TurnState.DONE)
                return

            self._set_state(TurnState.AWAITING_TOOLS)
            await self._execute_tool_calls(message.tool_calls, progress)
            if progress.truncated:
                return

    async def _build_request(self) -> _Request:
        system_message = self._prompt_builder.build()
        result = await self._await_cancellable(self._budget.select(self._log.messages, system_message))
        result.raise_for_verdict()
        if result.degraded:
            LOGGER.warning("Context summary unavailable; %d earlier message(s) dropped", result.dropped_count)
        elif result.trimmed:
            LOGGER.info("Context trimmed: %d earlier message(s) left out", result.dropped_count)
        messages = [SystemMessage(result.system_message).to_chat_param()]
        messages.extend(message.to_chat_param() for message in result.allowed_messages)
        return _Request(messages=messages, tools=self._gateway.tool_specs(), budget=result)

    async def _stream_with_retry(self, request: _Request) -> AssembledResponse:
        attempts = max(1, self._config.stream_retry_attempts)
        backoff = max(0.0, self._config.stream_retry_backoff_seconds)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_incrementing(start=backoff, increment=backoff),
            retry=retry_if_exception(_is_retryable),
            sleep=self._retry_sleep,
            before_sleep=_log_stream_retry,
            reraise=True,
        )
        response: AssembledResponse | None = None
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._await_cancellable(self._stream_once(request))
        except StreamError as exc:
            exc.attempts = int(retrying.statistics.get("attempt_number", 1))
            raise
        assert response is not None
        usage = self._client.last_usage
        self._log.token_usage = int(usage.get("total_tokens") or 0) if usage else 0
        return response

    async def _stream_once(self, request: _Request) -> AssembledResponse:
        assembler = StreamingResponseAssembler()
        events = self._client.stream_chat(
            request.messages,
            tools=request.tools or None,
            temperature=self._config.temperature,
            max_completion_tokens=self._config.max_completion_tokens,
        )
        try:
            return await assembler.consume(events, self._on_stream_event)
        except StreamError as exc:
            raise StreamError(str(exc), partial=not assembler.is_empty, cause=exc.cause or exc) from exc

    async def _on_stream_event(self, event: StreamEvent) -> None:
        self._check_cancelled()
        if isinstance(event, TextDelta) and event.text:
            await self._emit("on_text_chunk", event.text)
        elif isinstance(event, ReasoningDelta) and event.text:
            await self._emit("on_reasoning_chunk", event.text)

    async def _retry_sleep(self, seconds: float) -> None:
        await self._await_cancellable(asyncio.sleep(seconds))

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def _execute_tool_calls(self, calls: Sequence[ToolCall], progress: _TurnProgress) -> None:
        limit = self._config.max_tool_calls_per_turn
        for position, call in enumerate(calls):
            self._check_cancelled()
            if progress.executed >= limit:
                self._truncate(calls[position:], limit)
                progress.truncated = True
                notice = self._log.append(
                    AssistantMessage(
                        content=(
                            f"Stopped after {limit} tool calls in this turn. "
                            "Send another message to let me continue."
                        )
                    )
                )
                assert isinstance(notice, AssistantMessage)
                await self._emit("on_assistant_message", notice)
                return
            progress.executed += 1
            self._set_state(TurnState.EXECUTING_TOOLS)
            await self._run_tool_call(call)

    async def _run_tool_call(self, call: ToolCall) -> None:
        await self._emit("on_tool_call_started", call)
        definition = self._gateway.get_definition(call.name)
        if not self._approval.requires_confirmation(definition):
            outcome = await self._await_cancellable(self._gateway.execute(call))
            await self._record(call, outcome)
            return

        try:
            arguments = self._gateway.parse_arguments(call.name, call.arguments)
        except SchemaError as exc:
            await self._record(call, ToolOutcome.from_error(call.id, call.name, exc.to_dict()))
            return
        preview = self._gateway.preview(call, arguments)
        request = self._approval.build_request(call, definition, arguments, preview)
        decision = await self._await_cancellable(self._approval.review(request))
        if decision is ApprovalDecision.YES:
            outcome = await self._await_cancellable(self._gateway.execute(call, arguments))
            await self._record(call, outcome)
            return

        reason = "The user cancelled the turn." if decision is ApprovalDecision.CANCEL else None
        payload = rejection_payload(call.name, reason) if reason else rejection_payload(call.name)
        await self._record(call, ToolOutcome.from_error(call.id, call.name, payload))
        if decision is ApprovalDecision.CANCEL:
            self._cancel_requested = True
            raise TurnCancelled("Cancelled at tool approval")

    async def _record(self, call: ToolCall, outcome: ToolOutcome) -> None:
        message = self._log.append(outcome.to_message())
        assert isinstance(message, ToolMessage)
        await self._emit("on_tool_call_result", call, message)

    def _truncate(self, calls: Sequence[ToolCall], limit: int) -> None:
        LOGGER.warning("Tool call limit of %d reached; %d call(s) not executed", limit, len(calls))
        for call in calls:
            payload = {
                "error": "not_executed",
                "tool": call.name,
                "reason": f"Tool call limit of {limit} per turn reached.",
            }
            self._log.append(ToolOutcome.from_error(call.id, call.name, payload).to_message())

    def _answer_pending(self, code: str, reason: str) -> None:
        for call in self._log.pending_tool_calls():
            payload = {"error": code, "tool": call.name, "reason": reason}
            self._log.append(ToolOutcome.from_error(call.id, call.name, payload).to_message())

    # ------------------------------------------------------------------
    # Cancellation and callbacks
    # ------------------------------------------------------------------

    def _interrupted(self) -> bool:
        if self._cancel_requested:
            return True
        if self._should_interrupt is not None and self._should_interrupt():
            self._cancel_requested = True
            return True
        return False

    def _check_cancelled(self) -> None:
        if self._interrupted():
            raise TurnCancelled("Turn cancelled")

    def _set_state(self, state: TurnState) -> None:
        if state not in (TurnState.IDLE, TurnState.DONE):
            self._check_cancelled()
        if state is not self._state:
            LOGGER.debug("Turn state %s -> %s", self._state.value, state.value)
            self._state = state

    async def _await_cancellable(self, awaitable: Awaitable[T]) -> T:
        if self._interrupted():
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise TurnCancelled("Turn cancelled")
        task = asyncio.ensure_future(awaitable)
        self._inflight = task
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if self._cancel_requested and (current is None or not current.cancelling()):
                raise TurnCancelled("Turn cancelled") from None
            raise
        finally:
            if self._inflight is task:
                self._inflight = None

    async def _emit(self, name: str, *args: Any) -> None:
        callback = getattr(self.callbacks, name, None)
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            LOGGER.exception("Callback %s failed", name)


def _log_stream_retry(retry_state: Any) -> None:
    outcome = retry_state.outcome
    exc = outcome.exception() if outcome is not None else None
    LOGGER.warning(
        "Completion stream failed before producing output (attempt %s): %s; retrying",
        retry_state.attempt_number,
        exc,
    )
