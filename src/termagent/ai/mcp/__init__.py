"""Tool provider gateway (in-process services and MCP servers)."""

from .gateway import ClientFactory, ToolProtocolGateway
from .transports import InProcessClient, ProviderCallError, ProviderClient, SessionClient
from .types import (
    SEPARATOR,
    ProviderConfig,
    ProviderConnection,
    ProviderStatus,
    RemoteTool,
    ToolDefinition,
    ToolOutcome,
    TransportKind,
    derive_event_stream_url,
    qualify,
    split_qualified_name,
)

__all__ = [
    "SEPARATOR",
    "ClientFactory",
    "InProcessClient",
    "ProviderCallError",
    "ProviderClient",
    "ProviderConfig",
    "ProviderConnection",
    "ProviderStatus",
    "RemoteTool",
    "SessionClient",
    "ToolDefinition",
    "ToolOutcome",
    "ToolProtocolGateway",
    "TransportKind",
    "derive_event_stream_url",
    "qualify",
    "split_qualified_name",
]
