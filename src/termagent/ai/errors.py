"""Error taxonomy shared by the orchestration engine.

Errors local to a single provider or tool call are converted into data (a
``tool`` message) by the gateway. Only stream-level and configuration-level
errors are allowed to terminate a turn.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping

__all__ = [
    "AgentError",
    "TransportError",
    "StreamError",
    "ToolExecutionError",
    "SchemaError",
    "ConfigurationError",
    "TurnCancelled",
    "ConversationIntegrityError",
]


class AgentError(RuntimeError):
    """Base class for every error raised by the engine."""


class TransportError(AgentError):
    """Raised when a tool provider is unreachable or its handshake fails."""

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        transport: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.provider = provider
        self.transport = transport
        self.cause = cause
        label = f"{provider} ({transport})" if transport else provider
        super().__init__(f"Provider {label} unavailable: {message}")


class StreamError(AgentError):
    """Raised when the completion stream fails mid-response."""

    def __init__(
        self,
        message: str,
        *,
        attempts: int = 1,
        partial: bool = False,
        cause: BaseException | None = None,
    ) -> None:
        self.attempts = attempts
        self.partial = partial
        self.cause = cause
        super().__init__(message)


class ToolExecutionError(AgentError):
    """Raised when a tool ran (or was routed) but failed.

    The gateway always converts this error into a ``tool`` result message; it
    never escapes the orchestrator.
    """

    default_code = "tool_failed"

    def __init__(
        self,
        qualified_name: str,
        message: str,
        *,
        code: str | None = None,
        details: Mapping[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.qualified_name = qualified_name
        self.message = message
        self.code = code or self.default_code
        self.details = dict(details) if details else {}
        self.cause = cause
        super().__init__(f"{qualified_name}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "tool": self.qualified_name,
            "message": self.message,
        }
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class SchemaError(ToolExecutionError):
    """Accumulated tool-call arguments were malformed or violated the tool schema."""

    default_code = "invalid_arguments"


class ConfigurationError(AgentError):
    """Fatal misconfiguration for the current turn; never retried."""


class TurnCancelled(AgentError):
    """Raised when the cooperative interrupt flag fires during a turn."""


class ConversationIntegrityError(AgentError):
    """Raised when an append would break the conversation log invariants."""
