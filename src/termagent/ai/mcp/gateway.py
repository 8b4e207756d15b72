"""Single tool namespace over every configured provider."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Mapping, MutableMapping, Sequence

from ...chat.message_model import ToolCall
from ..errors import ConfigurationError, SchemaError, ToolExecutionError, TransportError
from ..tools.service import ToolService, first_validation_error
from ..tools.types import ChangePreview
from .transports import InProcessClient, ProviderCallError, ProviderClient, SessionClient
from .types import (
    ProviderConfig,
    ProviderConnection,
    ProviderStatus,
    ToolDefinition,
    ToolOutcome,
    TransportKind,
    derive_event_stream_url,
    qualify,
    split_qualified_name,
    to_parameters_schema,
    validate_provider_name,
)

__all__ = ["ToolProtocolGateway", "ClientFactory"]

LOGGER = logging.getLogger(__name__)

ClientFactory = Callable[[ProviderConfig, TransportKind, str | None], ProviderClient]


def _default_client_factory(config: ProviderConfig, kind: TransportKind, url: str | None) -> ProviderClient:
    return SessionClient(config, kind, url=url)


class ToolProtocolGateway:
    """Connects providers, namespaces their tools, and executes calls.

    Provider failures are isolated: a provider that cannot be reached is marked
    failed and the remaining providers keep working. Tool failures never raise
    out of :meth:`execute`; they become error outcomes.
    """

    def __init__(
        self,
        configs: Sequence[ProviderConfig] = (),
        *,
        in_process: Mapping[str, ToolService] | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._client_factory = client_factory or _default_client_factory
        self._configs: Dict[str, ProviderConfig] = {}
        self._services: Dict[str, ToolService] = {}
        self._connections: Dict[str, ProviderConnection] = {}
        self._clients: Dict[str, ProviderClient] = {}
        self._definitions: Dict[str, ToolDefinition] = {}
        for name, service in (in_process or {}).items():
            self.register_in_process(service, name=name)
        for config in configs:
            self.add_provider(config)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_in_process(self, service: ToolService, *, name: str | None = None) -> None:
        provider = validate_provider_name(name or service.name)
        self._ensure_unique(provider)
        self._services[provider] = service
        self._connections[provider] = ProviderConnection(provider, TransportKind.IN_PROCESS)

    def add_provider(self, config: ProviderConfig) -> None:
        self._ensure_unique(config.name)
        self._configs[config.name] = config
        self._connections[config.name] = ProviderConnection(config.name, config.transport, endpoint=config.url or config.command)

    def _ensure_unique(self, name: str) -> None:
        if name in self._connections:
            raise ConfigurationError(f"Duplicate provider name: {name}")

    # ------------------------------------------------------------------
    # Connection and discovery
    # ------------------------------------------------------------------

    async def connect_all(self) -> List[ProviderConnection]:
        """Connect every pending provider in registration order."""

        for name, connection in self._connections.items():
            if connection.status is ProviderStatus.CONNECTED:
                continue
            try:
                client = await self._connect(name, connection)
                tools = await client.list_tools()
            except TransportError as exc:
                self._mark_failed(connection, str(exc))
                continue
            except Exception as exc:
                await self._discard(name)
                self._mark_failed(connection, f"tool discovery failed: {exc}")
                continue
            connection.tools = self._discover(name, tools)
            connection.status = ProviderStatus.CONNECTED
            connection.error = None
            LOGGER.info(
                "Provider %s connected over %s with %d tool(s)",
                name,
                connection.describe_transport(),
                len(connection.tools),
            )
        return self.connections()

    async def _connect(self, name: str, connection: ProviderConnection) -> ProviderClient:
        if name in self._services:
            client: ProviderClient = InProcessClient(self._services[name])
            await client.connect()
            connection.actual_transport = TransportKind.IN_PROCESS
            self._clients[name] = client
            return client

        config = self._configs[name]
        try:
            client = await self._open(config, config.transport, config.url)
            connection.actual_transport = config.transport
            return client
        except Exception as exc:
            if config.transport is not TransportKind.REQUEST or not config.url:
                raise TransportError(name, str(exc) or type(exc).__name__, transport=config.transport.value, cause=exc) from exc
            fallback_url = derive_event_stream_url(config.url)
            LOGGER.warning(
                "Provider %s failed over %s (%s); retrying as event stream at %s",
                name,
                config.transport.value,
                exc,
                fallback_url,
            )
            try:
                client = await self._open(config, TransportKind.EVENT_STREAM, fallback_url)
            except Exception as fallback_exc:
                LOGGER.debug("Event-stream fallback for %s failed: %s", name, fallback_exc)
                raise TransportError(name, str(exc) or type(exc).__name__, transport=config.transport.value, cause=exc) from exc
            connection.actual_transport = TransportKind.EVENT_STREAM
            connection.endpoint = fallback_url
            return client

    async def _open(self, config: ProviderConfig, kind: TransportKind, url: str | None) -> ProviderClient:
        client = self._client_factory(config, kind, url)
        await client.connect()
        self._clients[config.name] = client
        return client

    def _discover(self, provider: str, tools: Sequence[Any]) -> List[ToolDefinition]:
        definitions: List[ToolDefinition] = []
        for tool in tools:
            qualified_name = qualify(provider, tool.name)
            if qualified_name in self._definitions:
                LOGGER.warning("Skipping duplicate tool %s", qualified_name)
                continue
            definition = ToolDefinition(
                qualified_name=qualified_name,
                provider=provider,
                local_name=tool.name,
                description=tool.description or "",
                parameters=to_parameters_schema(tool.input_schema),
                requires_confirmation=bool(tool.requires_confirmation),
                mutates_content=bool(tool.mutates_content),
            )
            self._definitions[qualified_name] = definition
            definitions.append(definition)
        return definitions

    def _mark_failed(self, connection: ProviderConnection, error: str) -> None:
        connection.status = ProviderStatus.FAILED
        connection.error = error
        connection.tools = []
        LOGGER.warning("Provider %s unavailable: %s", connection.name, error)

    async def _discard(self, name: str) -> None:
        client = self._clients.pop(name, None)
        if client is not None:
            await client.aclose()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def connections(self) -> List[ProviderConnection]:
        return list(self._connections.values())

    def active_tools(self) -> List[ToolDefinition]:
        return [
            definition
            for connection in self._connections.values()
            if connection.status is ProviderStatus.CONNECTED
            for definition in connection.tools
        ]

    def tool_specs(self) -> List[Dict[str, Any]]:
        return [definition.as_openai_tool() for definition in self.active_tools()]

    def get_definition(self, qualified_name: str) -> ToolDefinition | None:
        return self._definitions.get(qualified_name)

    def summary(self) -> Dict[str, Any]:
        providers: MutableMapping[str, Any] = {}
        for connection in self._connections.values():
            providers[connection.name] = {
                "status": connection.status.value,
                "transport": connection.describe_transport(),
                "tools": len(connection.tools),
                "error": connection.error,
            }
        return {
            "providers": dict(providers),
            "connected": sum(1 for c in self._connections.values() if c.status is ProviderStatus.CONNECTED),
            "failed": sum(1 for c in self._connections.values() if c.status is ProviderStatus.FAILED),
            "tools": len(self.active_tools()),
        }

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def parse_arguments(self, qualified_name: str, raw: str | None) -> Dict[str, Any]:
        """Parse accumulated argument text and validate it against the tool schema."""

        text = (raw or "").strip() or "{}"
        try:
            arguments = json.loads(text)
        except json.JSONDecodeError as exc:
            raise SchemaError(
                qualified_name,
                f"arguments are not valid JSON: {exc.msg} at position {exc.pos}",
                details={"arguments": _clip(text)},
                cause=exc,
            ) from exc
        if not isinstance(arguments, dict):
            raise SchemaError(qualified_name, "arguments must be a JSON object", details={"arguments": _clip(text)})
        definition = self._definitions.get(qualified_name)
        if definition is not None:
            problem = first_validation_error(definition.parameters, arguments)
            if problem is not None:
                raise SchemaError(qualified_name, problem)
        return arguments

    async def invoke(self, qualified_name: str, arguments: Mapping[str, Any]) -> Any:
        try:
            provider, local_name = split_qualified_name(qualified_name)
        except ValueError as exc:
            raise ToolExecutionError(qualified_name, str(exc), code="unknown_tool") from exc
        client = self._clients.get(provider)
        connection = self._connections.get(provider)
        if client is None or connection is None or connection.status is not ProviderStatus.CONNECTED:
            raise ToolExecutionError(qualified_name, f"provider {provider!r} is not connected", code="provider_unavailable")
        if qualified_name not in self._definitions:
            raise ToolExecutionError(qualified_name, "unknown tool", code="unknown_tool")

        LOGGER.debug("Invoking %s", qualified_name)
        try:
            return await client.call_tool(local_name, arguments)
        except ProviderCallError as exc:
            code = exc.code if isinstance(exc.code, str) else None
            raise ToolExecutionError(qualified_name, str(exc), code=code, details=exc.details, cause=exc) from exc
        except ToolExecutionError:
            raise
        except Exception as exc:
            raise ToolExecutionError(qualified_name, str(exc) or type(exc).__name__, cause=exc) from exc

    async def execute(self, call: ToolCall, arguments: Mapping[str, Any] | None = None) -> ToolOutcome:
        """Run *call* and return its outcome; tool-level failures are data, not exceptions."""

        try:
            if arguments is None:
                arguments = self.parse_arguments(call.name, call.arguments)
            result = await self.invoke(call.name, arguments)
        except ToolExecutionError as exc:
            LOGGER.info("Tool %s failed: %s", call.name, exc.message)
            return ToolOutcome.from_error(call.id, call.name, exc.to_dict())
        return ToolOutcome(call.id, call.name, _render_result(result))

    def preview(self, call: ToolCall, arguments: Mapping[str, Any]) -> ChangePreview | None:
        definition = self._definitions.get(call.name)
        if definition is None or not definition.mutates_content:
            return None
        client = self._clients.get(definition.provider)
        if client is None:
            return None
        try:
            return client.preview(definition.local_name, arguments)
        except Exception:
            LOGGER.warning("Preview for %s failed; approving without a diff", call.name, exc_info=True)
            return None

    async def aclose(self) -> None:
        for name in list(self._clients):
            await self._discard(name)
        for connection in self._connections.values():
            connection.status = ProviderStatus.PENDING
            connection.tools = []
        self._definitions.clear()


def _render_result(result: Any) -> str:
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, default=str)


def _clip(text: str, limit: int = 200) -> str:
    return text if len(text) <= limit else text[:limit] + "..."
