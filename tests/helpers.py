"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from termagent.ai.client import Finish, TextDelta, ToolCallDelta
from termagent.ai.mcp.types import ProviderConfig, RemoteTool, TransportKind
from termagent.ai.tools import ChangePreview, ToolError, ToolService, ToolSpec
from termagent.ai.tools.errors import ErrorCode


def text_response(*chunks: str) -> List[Any]:
    return [*(TextDelta(chunk) for chunk in chunks), Finish("stop")]


def tool_call_response(*calls: tuple[str, str, str]) -> List[Any]:
    """Events announcing ``(id, name, arguments)`` calls, arguments split in two fragments."""

    events: List[Any] = []
    for index, (call_id, name, arguments) in enumerate(calls):
        middle = len(arguments) // 2
        events.append(ToolCallDelta(index=index, id=call_id, name=name))
        events.append(ToolCallDelta(index=index, arguments=arguments[:middle]))
        events.append(ToolCallDelta(index=index, arguments=arguments[middle:]))
    events.append(Finish("tool_calls"))
    return events


class ScriptedStreamClient:
    """Stands in for ``AIClient``; each ``stream_chat`` call replays the next script.

    An exception instance inside a script is raised at that point of the stream.
    """

    def __init__(self, scripts: Iterable[Sequence[Any]], *, usage: Mapping[str, int] | None = None) -> None:
        self._scripts = [list(script) for script in scripts]
        self.requests: List[Dict[str, Any]] = []
        self.last_usage = dict(usage) if usage else None

    async def stream_chat(self, messages, *, tools=None, temperature=None, max_completion_tokens=None):
        self.requests.append({"messages": list(messages), "tools": list(tools or [])})
        if not self._scripts:
            raise AssertionError("No scripted response left")
        for item in self._scripts.pop(0):
            if isinstance(item, BaseException):
                raise item
            yield item


class BlockingStreamClient:
    """A client whose stream never produces anything until cancelled."""

    last_usage = None

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.requests = 0

    async def stream_chat(self, messages, **_kwargs):
        self.requests += 1
        self.started.set()
        await asyncio.Event().wait()
        yield TextDelta("never")


class EchoService(ToolService):
    """In-process provider with a harmless tool, a sensitive tool, and a failing tool."""

    def __init__(self, name: str = "echo") -> None:
        self.calls: List[tuple[str, Dict[str, Any]]] = []
        super().__init__(name, timeout_seconds=5.0)

    def _register_tools(self) -> None:
        self.registry.register_function(
            ToolSpec(
                name="echo",
                description="Echo the given text.",
                parameters={
                    "type": "object",
                    "properties": {"text": {"type": "string"}},
                    "required": ["text"],
                },
            ),
            self._echo,
        )
        self.registry.register_function(
            ToolSpec(
                name="remove",
                description="Remove a named item.",
                parameters={
                    "type": "object",
                    "properties": {"item": {"type": "string"}},
                    "required": ["item"],
                },
                requires_confirmation=True,
                mutates_content=True,
            ),
            self._remove,
            preview=lambda params: ChangePreview(str(params["item"]), "keep\nitem\n", "keep\n"),
        )
        self.registry.register_function(
            ToolSpec(name="fail", description="Always fails."),
            self._fail,
        )

    def _echo(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        self.calls.append(("echo", dict(params)))
        return {"echo": params["text"]}

    def _remove(self, params: Mapping[str, Any]) -> str:
        self.calls.append(("remove", dict(params)))
        return f"removed {params['item']}"

    def _fail(self, params: Mapping[str, Any]) -> None:
        self.calls.append(("fail", dict(params)))
        raise ToolError(ErrorCode.FILE_NOT_FOUND, "Path does not exist: ghost.txt", {"path": "ghost.txt"})


class FakeProviderClient:
    """Remote provider client driven by a :class:`FakeProviderFactory`."""

    def __init__(self, factory: "FakeProviderFactory", config: ProviderConfig, kind: TransportKind, url: str | None) -> None:
        self.factory = factory
        self.config = config
        self.kind = kind
        self.url = url
        self.closed = False

    async def connect(self) -> None:
        self.factory.attempts.append((self.config.name, self.kind, self.url))
        if (self.config.name, self.kind) in self.factory.failing:
            raise ConnectionError(f"{self.kind.value} refused")

    async def list_tools(self) -> List[RemoteTool]:
        return list(self.factory.tools.get(self.config.name, ()))

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> Any:
        self.factory.calls.append((self.config.name, name, dict(arguments)))
        return {"tool": name, "arguments": dict(arguments)}

    def preview(self, name: str, arguments: Mapping[str, Any]) -> ChangePreview | None:
        return None

    async def aclose(self) -> None:
        self.closed = True


class FakeProviderFactory:
    """Client factory recording connection attempts; ``failing`` holds ``(name, kind)`` pairs."""

    def __init__(
        self,
        tools: Mapping[str, Sequence[RemoteTool]] | None = None,
        *,
        failing: Iterable[tuple[str, TransportKind]] = (),
    ) -> None:
        self.tools = dict(tools or {})
        self.failing = set(failing)
        self.attempts: List[tuple[str, TransportKind, str | None]] = []
        self.calls: List[tuple[str, str, Dict[str, Any]]] = []

    def __call__(self, config: ProviderConfig, kind: TransportKind, url: str | None) -> FakeProviderClient:
        return FakeProviderClient(self, config, kind, url)
