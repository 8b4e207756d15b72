"""Standardized error types for built-in tools.

Errors raised by tool handlers are serialized into the in-process envelope
``{"id", "error": {"code", "message", "data"}}`` using JSON-RPC error numbers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------


class ErrorCode:
    """Machine-readable error identifiers used in tool responses."""

    INVALID_PARAMETER = "invalid_parameter"
    FILE_NOT_FOUND = "file_not_found"
    FILE_EXISTS = "file_exists"
    NOT_A_DIRECTORY = "not_a_directory"
    INVALID_LINE_RANGE = "invalid_line_range"
    BINARY_FILE = "binary_file"
    PATTERN_INVALID = "pattern_invalid"
    TODO_NOT_FOUND = "todo_not_found"
    TIMEOUT = "timeout"
    INTERNAL_ERROR = "internal_error"


class EnvelopeCode:
    """JSON-RPC numbers carried in the ``error.code`` field of an envelope."""

    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603


@dataclass
class ToolError(Exception):
    """Base exception for failures reported by a built-in tool.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
        envelope_code: JSON-RPC number used when the error crosses the envelope.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    envelope_code: int = EnvelopeCode.INVALID_PARAMS

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.details:
            result["details"] = dict(self.details)
        return result

    def to_envelope_error(self) -> dict[str, Any]:
        return {"code": self.envelope_code, "message": self.message, "data": self.to_dict()}

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


def invalid_parameter(message: str, **details: Any) -> ToolError:
    return ToolError(ErrorCode.INVALID_PARAMETER, message, dict(details))


def file_not_found(path: str) -> ToolError:
    return ToolError(ErrorCode.FILE_NOT_FOUND, f"Path does not exist: {path}", {"path": path})
