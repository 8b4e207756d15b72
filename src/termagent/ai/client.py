"""Async AI client wrapper built around OpenAI-compatible endpoints."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Sequence, Union, cast

import httpx
import tiktoken
from openai import AsyncOpenAI, APIConnectionError, APIError, InternalServerError, RateLimitError
from openai.types.chat import ChatCompletionMessageParam, ChatCompletionToolParam
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .ai_types import TokenCounterProtocol
from .errors import StreamError

__all__ = [
    "AIClient",
    "ClientSettings",
    "ApproxByteCounter",
    "TiktokenCounter",
    "TokenCounterRegistry",
    "TextDelta",
    "ReasoningDelta",
    "ToolCallDelta",
    "Finish",
    "StreamEvent",
]

LOGGER = logging.getLogger(__name__)
_DEFAULT_CHARS_PER_TOKEN = 3.5
_DEFAULT_ENCODING = "o200k_base"
_TRANSPORT_ERRORS = (APIError, APIConnectionError, httpx.HTTPError)
_TRANSIENT_ERRORS = (APIConnectionError, RateLimitError, InternalServerError, httpx.TransportError)


class ApproxByteCounter(TokenCounterProtocol):
    """Deterministic counter that estimates tokens from character length."""

    def __init__(self, *, model_name: str | None = None, chars_per_token: float = _DEFAULT_CHARS_PER_TOKEN) -> None:
        self.model_name = model_name
        self._chars_per_token = max(1.0, float(chars_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        return max(1, math.ceil(len(text) / self._chars_per_token))


class TiktokenCounter(TokenCounterProtocol):
    """Token counter backed by OpenAI's tiktoken package."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name, encoding_name)
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        try:
            return len(self._encoding.encode(text, disallowed_special=()))
        except ValueError:
            LOGGER.debug("tiktoken encode failed; falling back to approximation", exc_info=True)
            return self._fallback.estimate(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    def _load_encoding(self, model_name: str, encoding_name: str | None):
        if encoding_name:
            return tiktoken.get_encoding(encoding_name)
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            LOGGER.debug("Falling back to %s encoding for model %s", _DEFAULT_ENCODING, model_name)
            return tiktoken.get_encoding(_DEFAULT_ENCODING)


class TokenCounterRegistry:
    """Registry maintaining tokenizer implementations per model."""

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounterProtocol] = {}

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def has(self, model_name: str | None) -> bool:
        key = self._normalize_key(model_name)
        return bool(key and key in self._counters)

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = self._normalize_key(model_name)
        if key and key in self._counters:
            return self._counters[key]
        return self._fallback

    def count(self, model_name: str | None, text: str) -> int:
        return self.get(model_name).count(text)

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


# -----------------------------------------------------------------------------
# Stream events
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TextDelta:
    text: str


@dataclass(slots=True, frozen=True)
class ReasoningDelta:
    text: str


@dataclass(slots=True, frozen=True)
class ToolCallDelta:
    """Fragment of a streamed tool call; ``id`` is set when a call is announced."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass(slots=True, frozen=True)
class Finish:
    reason: str


StreamEvent = Union[TextDelta, ReasoningDelta, ToolCallDelta, Finish]


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


class AIClient:
    """Async client exposing a normalized completion stream and one-shot calls."""

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
        token_registry: TokenCounterRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._models_cache: List[str] | None = None
        self._models_lock = asyncio.Lock()
        self._token_registry = token_registry or TokenCounterRegistry()
        self._register_default_token_counter()
        self.last_usage: Dict[str, int] | None = None

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream_chat(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        tools: Iterable[ChatCompletionToolParam | Mapping[str, Any]] | None = None,
        temperature: float | None = 0.2,
        max_completion_tokens: int | None = None,
        **extra_params: Any,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a chat completion as structured events.

        Transport faults are raised as :class:`StreamError`. Retrying is left to
        the caller, which knows whether anything was already assembled.
        """

        payload = self._build_chat_payload(
            messages=self._coerce_messages(messages),
            tools=tools,
            temperature=temperature,
            max_completion_tokens=max_completion_tokens,
            extra_params=extra_params,
        )
        payload["stream"] = True
        self.last_usage = None
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        try:
            stream = await self._client.chat.completions.create(**payload)
            async for chunk in stream:
                for event in self._normalize_chunk(chunk):
                    yield event
        except _TRANSPORT_ERRORS as exc:
            raise StreamError(f"Completion stream failed: {exc}", cause=exc) from exc

    async def complete(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        temperature: float | None = 0.2,
        max_completion_tokens: int | None = None,
    ) -> str:
        """Run a non-streaming completion and return the message text."""

        payload = self._build_chat_payload(
            messages=self._coerce_messages(messages),
            tools=None,
            temperature=temperature,
            max_completion_tokens=max_completion_tokens,
            extra_params={},
        )
        async for attempt in self._retrying():
            with attempt:
                response = await self._client.chat.completions.create(**payload)
        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""
        message = getattr(choices[0], "message", None)
        return str(getattr(message, "content", None) or "")

    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Return a list of supported model identifiers."""

        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)

        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)

            response = await self._client.models.list()
            models = [item.id for item in response.data if getattr(item, "id", None)]
            self._models_cache = models
            return list(models)

    def get_token_counter(self, model: str | None = None) -> TokenCounterProtocol:
        return self._token_registry.get(model or self._settings.model)

    def count_tokens(self, text: str, *, model: str | None = None, estimate_only: bool = False) -> int:
        if not text:
            return 0
        counter = self.get_token_counter(model)
        if estimate_only:
            return counter.estimate(text)
        return counter.count(text)

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _register_default_token_counter(self) -> None:
        model_name = (self._settings.model or "").strip()
        if not model_name or self._token_registry.has(model_name):
            return
        try:
            counter: TokenCounterProtocol = TiktokenCounter(model_name)
        except (ValueError, OSError) as exc:
            LOGGER.warning("Failed to initialize tiktoken counter for %s: %s", model_name, exc)
            counter = ApproxByteCounter(model_name=model_name)
        self._token_registry.register(model_name, counter)

    def _retrying(self) -> AsyncRetrying:
        """Retry policy for one-shot calls; only transient failures are retried."""

        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(multiplier=self._settings.retry_min_seconds, max=self._settings.retry_max_seconds),
            retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        )

    def _coerce_messages(
        self, messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam]
    ) -> List[ChatCompletionMessageParam]:
        try:
            normalized = [cast(ChatCompletionMessageParam, dict(message)) for message in messages]
        except (TypeError, ValueError) as exc:
            raise TypeError("Messages must be mapping-like objects") from exc
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _build_chat_payload(
        self,
        *,
        messages: Sequence[ChatCompletionMessageParam],
        tools: Iterable[ChatCompletionToolParam | Mapping[str, Any]] | None,
        temperature: float | None,
        max_completion_tokens: int | None,
        extra_params: Mapping[str, Any],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": list(messages),
        }
        tool_list = list(tools) if tools else []
        if tool_list:
            payload["tools"] = tool_list
        if temperature is not None:
            payload["temperature"] = temperature
        if max_completion_tokens is not None:
            payload["max_completion_tokens"] = max_completion_tokens
        if extra_params:
            payload.update(extra_params)
        return payload

    def _normalize_chunk(self, chunk: Any) -> List[StreamEvent]:
        usage = getattr(chunk, "usage", None)
        if usage is not None:
            prompt_tokens = int(getattr(usage, "prompt_tokens", 0) or 0)
            completion_tokens = int(getattr(usage, "completion_tokens", 0) or 0)
            self.last_usage = {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": int(getattr(usage, "total_tokens", 0) or 0) or prompt_tokens + completion_tokens,
            }
        events: List[StreamEvent] = []
        for choice in getattr(chunk, "choices", None) or []:
            delta = getattr(choice, "delta", None)
            if delta is not None:
                reasoning = getattr(delta, "reasoning_content", None)
                if reasoning:
                    events.append(ReasoningDelta(str(reasoning)))
                content = getattr(delta, "content", None)
                if content:
                    events.append(TextDelta(str(content)))
                for tool_delta in getattr(delta, "tool_calls", None) or []:
                    function = getattr(tool_delta, "function", None)
                    events.append(
                        ToolCallDelta(
                            index=int(getattr(tool_delta, "index", 0) or 0),
                            id=getattr(tool_delta, "id", None) or None,
                            name=getattr(function, "name", None) if function is not None else None,
                            arguments=getattr(function, "arguments", None) if function is not None else None,
                        )
                    )
            finish_reason = getattr(choice, "finish_reason", None)
            if finish_reason:
                events.append(Finish(str(finish_reason)))
        return events

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result
