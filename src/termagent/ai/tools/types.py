"""Tool system types for in-process providers.

These types describe built-in tools before the gateway namespaces them with
their provider name.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Mapping, Protocol, runtime_checkable

__all__ = [
    "ToolSpec",
    "ToolHandler",
    "AsyncToolHandler",
    "PreviewHandler",
    "ChangePreview",
    "Tool",
    "SimpleTool",
]


# -----------------------------------------------------------------------------
# Tool Specification
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Specification for a tool's interface.

    Attributes:
        name: Tool name, unique within its provider.
        description: Human-readable description of what the tool does.
        parameters: JSON Schema for the tool's parameters.
        requires_confirmation: Whether a human must approve each invocation.
        mutates_content: Whether the tool changes file content (enables diff previews).
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    requires_confirmation: bool = False
    mutates_content: bool = False

    def input_schema(self) -> dict[str, Any]:
        """Return the parameter schema, defaulting to an empty object schema."""
        if self.parameters:
            return dict(self.parameters)
        return {"type": "object", "properties": {}, "required": []}


@dataclass(slots=True, frozen=True)
class ChangePreview:
    """Old and new content of a file a tool is about to change."""

    path: str
    old_text: str
    new_text: str


# -----------------------------------------------------------------------------
# Tool Handler Types
# -----------------------------------------------------------------------------

ToolHandler = Callable[[Mapping[str, Any]], Any]
AsyncToolHandler = Callable[[Mapping[str, Any]], Coroutine[Any, Any, Any]]
PreviewHandler = Callable[[Mapping[str, Any]], "ChangePreview | None"]


@runtime_checkable
class Tool(Protocol):
    """Protocol for tool implementations."""

    @property
    def name(self) -> str:
        ...

    @property
    def spec(self) -> ToolSpec:
        ...

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        ...

    def preview(self, arguments: Mapping[str, Any]) -> ChangePreview | None:
        ...


@dataclass
class SimpleTool:
    """Tool implementation wrapping a callable.

    Example:
        tool = SimpleTool(
            spec=ToolSpec(name="greet", description="Greet someone"),
            handler=lambda args: f"Hello, {args.get('name', 'World')}!",
        )
    """

    spec: ToolSpec
    handler: ToolHandler | AsyncToolHandler
    preview_handler: PreviewHandler | None = None
    _is_async: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self._is_async = inspect.iscoroutinefunction(self.handler)

    @property
    def name(self) -> str:
        return self.spec.name

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        if self._is_async:
            return await self.handler(arguments)  # type: ignore[misc]
        return self.handler(arguments)

    def preview(self, arguments: Mapping[str, Any]) -> ChangePreview | None:
        if self.preview_handler is None:
            return None
        return self.preview_handler(arguments)
