"""Provider clients: in-process services and MCP sessions over stdio or HTTP."""

from __future__ import annotations

import itertools
import logging
import os
from contextlib import AsyncExitStack
from datetime import timedelta
from typing import Any, List, Mapping, Protocol

from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client

from ..tools.service import ToolService
from ..tools.types import ChangePreview
from .types import ProviderConfig, RemoteTool, TransportKind

__all__ = [
    "ProviderCallError",
    "ProviderClient",
    "InProcessClient",
    "SessionClient",
]

LOGGER = logging.getLogger(__name__)


class ProviderCallError(RuntimeError):
    """A provider answered a tool call with an error."""

    def __init__(self, message: str, *, code: str | int | None = None, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.details = dict(details) if details else {}


class ProviderClient(Protocol):
    """What the gateway needs from a connected provider."""

    async def connect(self) -> None:
        ...

    async def list_tools(self) -> List[RemoteTool]:
        ...

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> Any:
        ...

    def preview(self, name: str, arguments: Mapping[str, Any]) -> ChangePreview | None:
        ...

    async def aclose(self) -> None:
        ...


class InProcessClient:
    """Adapts a :class:`ToolService` to the provider client interface."""

    def __init__(self, service: ToolService) -> None:
        self.service = service
        self._ids = itertools.count(1)

    async def connect(self) -> None:
        return None

    async def list_tools(self) -> List[RemoteTool]:
        return [
            RemoteTool(
                name=spec.name,
                description=spec.description,
                input_schema=spec.input_schema(),
                requires_confirmation=spec.requires_confirmation,
                mutates_content=spec.mutates_content,
            )
            for spec in self.service.list_tools()
        ]

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> Any:
        response = await self.service.handle_request(
            {"id": next(self._ids), "method": name, "params": dict(arguments)}
        )
        error = response.get("error")
        if error:
            data = error.get("data") or {}
            raise ProviderCallError(
                str(error.get("message") or "tool failed"),
                code=data.get("error") or error.get("code"),
                details=data.get("details"),
            )
        return response.get("result")

    def preview(self, name: str, arguments: Mapping[str, Any]) -> ChangePreview | None:
        return self.service.preview_change(name, arguments)

    async def aclose(self) -> None:
        return None


class SessionClient:
    """An MCP client session over one concrete transport."""

    def __init__(self, config: ProviderConfig, kind: TransportKind, *, url: str | None = None) -> None:
        if kind is TransportKind.IN_PROCESS:
            raise ValueError("SessionClient cannot serve in-process providers")
        self.config = config
        self.kind = kind
        self.url = url or config.url
        self._stack: AsyncExitStack | None = None
        self._session: ClientSession | None = None

    @property
    def endpoint(self) -> str:
        if self.kind is TransportKind.SUBPROCESS:
            return " ".join([self.config.command or "", *self.config.args]).strip()
        return self.url or ""

    async def connect(self) -> None:
        stack = AsyncExitStack()
        try:
            read, write = await self._open_streams(stack)
            session = await stack.enter_async_context(
                ClientSession(read, write, read_timeout_seconds=timedelta(seconds=self.config.timeout_seconds))
            )
            await session.initialize()
        except BaseException:
            await self._close_stack(stack)
            raise
        self._stack = stack
        self._session = session
        LOGGER.debug("Connected to %s over %s (%s)", self.config.name, self.kind.value, self.endpoint)

    async def _open_streams(self, stack: AsyncExitStack) -> tuple[Any, Any]:
        if self.kind is TransportKind.SUBPROCESS:
            params = StdioServerParameters(
                command=self.config.command or "",
                args=list(self.config.args),
                env={**os.environ, **dict(self.config.env or {})},
                cwd=self.config.cwd,
            )
            read, write = await stack.enter_async_context(stdio_client(params))
            return read, write
        headers = dict(self.config.headers or {})
        if self.kind is TransportKind.REQUEST:
            read, write, _session_id = await stack.enter_async_context(
                streamablehttp_client(self.url or "", headers=headers or None)
            )
            return read, write
        read, write = await stack.enter_async_context(sse_client(self.url or "", headers=headers or None))
        return read, write

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise ProviderCallError(f"Provider {self.config.name} is not connected")
        return self._session

    async def list_tools(self) -> List[RemoteTool]:
        response = await self._require_session().list_tools()
        tools: List[RemoteTool] = []
        for tool in response.tools:
            annotations = getattr(tool, "annotations", None)
            destructive = bool(getattr(annotations, "destructiveHint", False)) if annotations else False
            tools.append(
                RemoteTool(
                    name=tool.name,
                    description=tool.description or "",
                    input_schema=tool.inputSchema,
                    requires_confirmation=destructive,
                )
            )
        return tools

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> Any:
        result = await self._require_session().call_tool(name, dict(arguments))
        text = _join_content(result.content)
        if result.isError:
            raise ProviderCallError(text or f"{name} failed")
        structured = getattr(result, "structuredContent", None)
        if not text and structured is not None:
            return structured
        return text

    def preview(self, name: str, arguments: Mapping[str, Any]) -> ChangePreview | None:
        return None

    async def aclose(self) -> None:
        stack, self._stack, self._session = self._stack, None, None
        if stack is not None:
            await self._close_stack(stack)

    async def _close_stack(self, stack: AsyncExitStack) -> None:
        try:
            await stack.aclose()
        except Exception as exc:
            LOGGER.debug("Error while closing %s session: %s", self.config.name, exc)


def _join_content(items: Any) -> str:
    parts: List[str] = []
    for item in items or ():
        text = getattr(item, "text", None)
        if text is not None:
            parts.append(str(text))
        else:
            kind = getattr(item, "type", type(item).__name__)
            parts.append(f"[{kind} content]")
    return "\n".join(parts)
