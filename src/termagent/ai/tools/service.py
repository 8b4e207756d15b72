"""Base class for in-process tool providers.

A service owns a :class:`ToolRegistry` and answers the in-process envelope::

    {"id": 1, "method": "read_file", "params": {...}}
    -> {"id": 1, "result": ...} | {"id": 1, "error": {"code": -32602, "message": "..."}}
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Mapping

from jsonschema import Draft7Validator, ValidationError
from jsonschema.exceptions import SchemaError as InvalidSchemaError

from .errors import EnvelopeCode, ErrorCode, ToolError
from .registry import ToolRegistry
from .types import ChangePreview, ToolSpec

__all__ = ["ToolService", "format_validation_error", "first_validation_error"]

LOGGER = logging.getLogger(__name__)


def format_validation_error(error: ValidationError) -> str:
    path = ".".join(str(part) for part in error.path)
    if path:
        return f"{path}: {error.message}"
    return error.message


def first_validation_error(schema: Mapping[str, Any], payload: Any) -> str | None:
    """Return a readable message for the first schema violation, if any."""

    try:
        validator = Draft7Validator(dict(schema))
        error = next(iter(validator.iter_errors(payload)), None)
    except InvalidSchemaError as exc:
        LOGGER.debug("Skipping validation against an invalid schema: %s", exc)
        return None
    if error is None:
        return None
    return format_validation_error(error)


class ToolService:
    """In-process tool provider with envelope handling and per-call timeouts."""

    def __init__(self, name: str, version: str = "1.0.0", *, timeout_seconds: float | None = 60.0) -> None:
        self.name = name
        self.version = version
        self.timeout_seconds = timeout_seconds
        self.registry = ToolRegistry()
        self._register_tools()

    def _register_tools(self) -> None:
        """Subclasses register their tools here."""

    def list_tools(self) -> list[ToolSpec]:
        return self.registry.list_tools()

    async def handle_request(self, request: Mapping[str, Any]) -> Dict[str, Any]:
        request_id = request.get("id")
        method = str(request.get("method") or "")
        params = request.get("params") or {}

        tool = self.registry.get(method)
        if tool is None:
            return _error_envelope(request_id, EnvelopeCode.METHOD_NOT_FOUND, f"Unsupported method: {method}")
        if not isinstance(params, Mapping):
            return _error_envelope(request_id, EnvelopeCode.INVALID_PARAMS, "params must be an object")
        problem = first_validation_error(tool.spec.input_schema(), dict(params))
        if problem is not None:
            return _error_envelope(request_id, EnvelopeCode.INVALID_PARAMS, problem)

        LOGGER.debug("Executing %s.%s (request_id=%s)", self.name, method, request_id)
        start_time = time.perf_counter()
        try:
            if self.timeout_seconds is not None and self.timeout_seconds > 0:
                result = await asyncio.wait_for(tool.execute(params), timeout=self.timeout_seconds)
            else:
                result = await tool.execute(params)
        except asyncio.TimeoutError:
            LOGGER.warning("Tool %s.%s timed out after %.1fs", self.name, method, self.timeout_seconds)
            error = ToolError(
                ErrorCode.TIMEOUT,
                f"{method} timed out after {self.timeout_seconds}s",
                envelope_code=EnvelopeCode.INTERNAL_ERROR,
            )
            return {"id": request_id, "error": error.to_envelope_error()}
        except ToolError as exc:
            LOGGER.debug("Tool %s.%s reported %s", self.name, method, exc)
            return {"id": request_id, "error": exc.to_envelope_error()}
        except Exception as exc:
            LOGGER.warning("Tool %s.%s failed: %s", self.name, method, exc, exc_info=True)
            return _error_envelope(request_id, EnvelopeCode.INTERNAL_ERROR, f"Internal error: {exc}")

        duration_ms = (time.perf_counter() - start_time) * 1000
        LOGGER.debug("Tool %s.%s completed in %.1fms", self.name, method, duration_ms)
        return {"id": request_id, "result": result}

    def preview_change(self, method: str, params: Mapping[str, Any]) -> ChangePreview | None:
        """Return the content change *method* would make, for approval diffs."""

        tool = self.registry.get(method)
        if tool is None or not tool.spec.mutates_content:
            return None
        try:
            return tool.preview(params)
        except (ToolError, OSError, RuntimeError, ValueError) as exc:
            LOGGER.debug("No preview for %s.%s: %s", self.name, method, exc)
            return None


def _error_envelope(request_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"id": request_id, "error": {"code": code, "message": message}}
