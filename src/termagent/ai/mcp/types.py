"""Provider and tool descriptors for the tool protocol gateway."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping
from urllib.parse import urlparse, urlunparse

from ...chat.message_model import ToolMessage
from ..errors import ConfigurationError

__all__ = [
    "SEPARATOR",
    "TransportKind",
    "ProviderStatus",
    "ProviderConfig",
    "ProviderConnection",
    "RemoteTool",
    "ToolDefinition",
    "ToolOutcome",
    "derive_event_stream_url",
    "qualify",
    "split_qualified_name",
    "to_parameters_schema",
    "validate_provider_name",
]

SEPARATOR = "__"
_DEFAULT_TIMEOUT_SECONDS = 30.0


class TransportKind(str, Enum):
    IN_PROCESS = "in_process"
    SUBPROCESS = "subprocess"
    REQUEST = "request"
    EVENT_STREAM = "event_stream"


class ProviderStatus(str, Enum):
    PENDING = "pending"
    CONNECTED = "connected"
    FAILED = "failed"


def validate_provider_name(name: str) -> str:
    """Reject names that would make qualified tool names ambiguous."""

    candidate = (name or "").strip()
    if not candidate:
        raise ConfigurationError("Provider name must not be empty")
    if SEPARATOR in candidate or candidate.endswith("_"):
        raise ConfigurationError(
            f"Provider name {candidate!r} must not contain {SEPARATOR!r} or end with '_'"
        )
    return candidate


def qualify(provider: str, local_name: str) -> str:
    return f"{provider}{SEPARATOR}{local_name}"


def split_qualified_name(qualified_name: str) -> tuple[str, str]:
    """Split on the first separator into ``(provider, local_name)``."""

    provider, separator, local_name = qualified_name.partition(SEPARATOR)
    if not separator or not provider or not local_name:
        raise ValueError(f"{qualified_name!r} is not a qualified tool name")
    return provider, local_name


def to_parameters_schema(input_schema: Mapping[str, Any] | None) -> Dict[str, Any]:
    """Translate a provider input schema into function-calling ``parameters``."""

    if not input_schema:
        return {"type": "object", "properties": {}, "required": []}
    schema = dict(input_schema)
    schema.setdefault("type", "object")
    if schema.get("type") == "object":
        schema.setdefault("properties", {})
    return schema


@dataclass(slots=True, frozen=True)
class ProviderConfig:
    """Connection settings for one tool provider."""

    name: str
    transport: TransportKind
    url: str | None = None
    command: str | None = None
    args: tuple[str, ...] = ()
    env: Mapping[str, str] | None = None
    headers: Mapping[str, str] | None = None
    cwd: str | None = None
    timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        validate_provider_name(self.name)
        if self.transport in (TransportKind.REQUEST, TransportKind.EVENT_STREAM) and not self.url:
            raise ConfigurationError(f"Provider {self.name!r} needs a url")
        if self.transport is TransportKind.SUBPROCESS and not self.command:
            raise ConfigurationError(f"Provider {self.name!r} needs a command")

    @classmethod
    def from_mapping(
        cls,
        name: str,
        payload: Mapping[str, Any],
        *,
        default_timeout: float = _DEFAULT_TIMEOUT_SECONDS,
    ) -> "ProviderConfig":
        """Build a config from a settings entry such as ``{"url": ..., "type": "sse"}``."""

        url = payload.get("url")
        command = payload.get("command")
        declared = str(payload.get("type") or "").strip().lower()
        if url:
            is_sse = declared == "sse" or "/sse" in (urlparse(str(url)).path or "")
            transport = TransportKind.EVENT_STREAM if is_sse else TransportKind.REQUEST
        elif command:
            transport = TransportKind.SUBPROCESS
        else:
            raise ConfigurationError(f"Provider {name!r} needs either a url or a command")
        args = payload.get("args") or ()
        if isinstance(args, str):
            args = (args,)
        return cls(
            name=name,
            transport=transport,
            url=str(url) if url else None,
            command=str(command) if command else None,
            args=tuple(str(item) for item in args),
            env=dict(payload["env"]) if payload.get("env") else None,
            headers=dict(payload["headers"]) if payload.get("headers") else None,
            cwd=payload.get("cwd"),
            timeout_seconds=float(payload.get("timeout") or default_timeout),
        )


@dataclass(slots=True, frozen=True)
class RemoteTool:
    """A tool as reported by a provider, before namespacing."""

    name: str
    description: str = ""
    input_schema: Mapping[str, Any] | None = None
    requires_confirmation: bool = False
    mutates_content: bool = False


@dataclass(slots=True, frozen=True)
class ToolDefinition:
    """A namespaced tool exposed to the model."""

    qualified_name: str
    provider: str
    local_name: str
    description: str
    parameters: Mapping[str, Any]
    requires_confirmation: bool = False
    mutates_content: bool = False

    def as_openai_tool(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.qualified_name,
                "description": self.description,
                "parameters": dict(self.parameters),
            },
        }


@dataclass(slots=True)
class ProviderConnection:
    """Live state of one provider as seen by operators."""

    name: str
    transport_kind: TransportKind
    status: ProviderStatus = ProviderStatus.PENDING
    actual_transport: TransportKind | None = None
    endpoint: str | None = None
    tools: List[ToolDefinition] = field(default_factory=list)
    error: str | None = None

    @property
    def fell_back(self) -> bool:
        return self.actual_transport is not None and self.actual_transport is not self.transport_kind

    def describe_transport(self) -> str:
        if self.fell_back:
            assert self.actual_transport is not None
            return f"{self.transport_kind.value} -> {self.actual_transport.value}"
        return self.transport_kind.value


@dataclass(slots=True, frozen=True)
class ToolOutcome:
    """Result of executing one tool call; always converted to exactly one tool message."""

    call_id: str
    qualified_name: str
    content: str
    is_error: bool = False

    def to_message(self) -> ToolMessage:
        return ToolMessage(
            tool_call_id=self.call_id,
            name=self.qualified_name,
            content=self.content,
            is_error=self.is_error,
        )

    @classmethod
    def from_error(cls, call_id: str, qualified_name: str, payload: Mapping[str, Any]) -> "ToolOutcome":
        return cls(call_id, qualified_name, json.dumps(dict(payload), ensure_ascii=False), is_error=True)


def derive_event_stream_url(url: str) -> str:
    """Guess the event-stream endpoint for a request-style url.

    ``.../mcp`` becomes ``.../sse``; otherwise ``/sse`` is appended to the path.
    The query string is preserved.
    """

    parsed = urlparse(url)
    path = parsed.path or ""
    if path.endswith("/mcp"):
        path = path[: -len("mcp")] + "sse"
    elif path.endswith("/"):
        path = path + "sse"
    else:
        path = path + "/sse"
    return urlunparse(parsed._replace(path=path))
