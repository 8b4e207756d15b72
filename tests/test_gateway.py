"""Tests for the tool protocol gateway."""

from __future__ import annotations

import json

import pytest
from helpers import EchoService, FakeProviderFactory

from termagent.ai.errors import ConfigurationError, SchemaError
from termagent.ai.mcp import (
    ProviderConfig,
    ProviderStatus,
    RemoteTool,
    ToolProtocolGateway,
    TransportKind,
)
from termagent.ai.mcp.types import derive_event_stream_url, split_qualified_name, validate_provider_name
from termagent.chat.message_model import ToolCall


def _remote(name: str, url: str) -> ProviderConfig:
    return ProviderConfig.from_mapping(name, {"url": url})


@pytest.mark.asyncio
async def test_in_process_tools_are_namespaced_by_provider() -> None:
    gateway = ToolProtocolGateway(in_process={"echo": EchoService()})

    await gateway.connect_all()

    names = [definition.qualified_name for definition in gateway.active_tools()]
    assert names == ["echo__echo", "echo__remove", "echo__fail"]
    spec = gateway.tool_specs()[0]
    assert spec["type"] == "function"
    assert spec["function"]["name"] == "echo__echo"
    assert spec["function"]["parameters"]["required"] == ["text"]
    assert gateway.get_definition("echo__remove").requires_confirmation is True


@pytest.mark.asyncio
async def test_same_local_name_from_two_providers_stays_distinct() -> None:
    gateway = ToolProtocolGateway(in_process={"alpha": EchoService("alpha"), "beta": EchoService("beta")})

    await gateway.connect_all()
    alpha = await gateway.execute(ToolCall(id="1", name="alpha__echo", arguments='{"text": "a"}'))
    beta = await gateway.execute(ToolCall(id="2", name="beta__echo", arguments='{"text": "b"}'))

    names = {definition.qualified_name for definition in gateway.active_tools()}
    assert {"alpha__echo", "beta__echo"} <= names
    assert json.loads(alpha.content) == {"echo": "a"}
    assert json.loads(beta.content) == {"echo": "b"}


@pytest.mark.asyncio
async def test_request_transport_falls_back_to_event_stream() -> None:
    factory = FakeProviderFactory(
        {"docs": [RemoteTool("search", "Search docs", {"type": "object", "properties": {"q": {"type": "string"}}})]},
        failing=[("docs", TransportKind.REQUEST)],
    )
    gateway = ToolProtocolGateway([_remote("docs", "http://localhost:9000/mcp")], client_factory=factory)

    [connection] = await gateway.connect_all()

    assert connection.status is ProviderStatus.CONNECTED
    assert connection.transport_kind is TransportKind.REQUEST
    assert connection.actual_transport is TransportKind.EVENT_STREAM
    assert connection.endpoint == "http://localhost:9000/sse"
    assert connection.describe_transport() == "request -> event_stream"
    assert factory.attempts == [
        ("docs", TransportKind.REQUEST, "http://localhost:9000/mcp"),
        ("docs", TransportKind.EVENT_STREAM, "http://localhost:9000/sse"),
    ]
    outcome = await gateway.execute(ToolCall(id="c1", name="docs__search", arguments='{"q": "retry"}'))
    assert outcome.is_error is False
    assert factory.calls == [("docs", "search", {"q": "retry"})]


@pytest.mark.asyncio
async def test_failed_provider_is_isolated() -> None:
    factory = FakeProviderFactory(
        {"web": [RemoteTool("fetch")]},
        failing=[("db", TransportKind.REQUEST), ("db", TransportKind.EVENT_STREAM), ("local", TransportKind.SUBPROCESS)],
    )
    configs = [
        _remote("db", "http://localhost:7000/mcp"),
        ProviderConfig.from_mapping("local", {"command": "run-server", "args": ["--stdio"]}),
        _remote("web", "http://localhost:8000/sse"),
    ]
    gateway = ToolProtocolGateway(configs, in_process={"echo": EchoService()}, client_factory=factory)

    connections = {connection.name: connection for connection in await gateway.connect_all()}

    assert connections["db"].status is ProviderStatus.FAILED
    assert "refused" in (connections["db"].error or "")
    assert connections["local"].status is ProviderStatus.FAILED
    assert connections["web"].status is ProviderStatus.CONNECTED
    assert connections["web"].transport_kind is TransportKind.EVENT_STREAM
    assert connections["echo"].status is ProviderStatus.CONNECTED
    assert not any(definition.provider == "db" for definition in gateway.active_tools())
    summary = gateway.summary()
    assert summary["connected"] == 2
    assert summary["failed"] == 2

    outcome = await gateway.execute(ToolCall(id="c1", name="db__query", arguments="{}"))
    assert outcome.is_error
    assert json.loads(outcome.content)["error"] == "provider_unavailable"


@pytest.mark.asyncio
async def test_invalid_json_arguments_become_an_error_outcome() -> None:
    service = EchoService()
    gateway = ToolProtocolGateway(in_process={"echo": service})
    await gateway.connect_all()

    outcome = await gateway.execute(ToolCall(id="c1", name="echo__echo", arguments='{"text": '))

    assert outcome.is_error
    payload = json.loads(outcome.content)
    assert payload["error"] == "invalid_arguments"
    assert payload["tool"] == "echo__echo"
    assert service.calls == []
    assert outcome.to_message().tool_call_id == "c1"


@pytest.mark.asyncio
async def test_schema_violations_are_reported_before_invocation() -> None:
    gateway = ToolProtocolGateway(in_process={"echo": EchoService()})
    await gateway.connect_all()

    with pytest.raises(SchemaError):
        gateway.parse_arguments("echo__echo", '{"text": 5}')
    with pytest.raises(SchemaError):
        gateway.parse_arguments("echo__echo", "[1, 2]")
    assert gateway.parse_arguments("echo__fail", "") == {}


@pytest.mark.asyncio
async def test_tool_errors_keep_their_code() -> None:
    gateway = ToolProtocolGateway(in_process={"echo": EchoService()})
    await gateway.connect_all()

    outcome = await gateway.execute(ToolCall(id="c1", name="echo__fail", arguments="{}"))

    payload = json.loads(outcome.content)
    assert outcome.is_error
    assert payload["error"] == "file_not_found"
    assert payload["details"] == {"path": "ghost.txt"}


@pytest.mark.asyncio
async def test_unqualified_names_are_unknown_tools() -> None:
    gateway = ToolProtocolGateway(in_process={"echo": EchoService()})
    await gateway.connect_all()

    outcome = await gateway.execute(ToolCall(id="c1", name="echo", arguments="{}"))

    assert json.loads(outcome.content)["error"] == "unknown_tool"


@pytest.mark.asyncio
async def test_preview_only_for_content_changing_tools() -> None:
    gateway = ToolProtocolGateway(in_process={"echo": EchoService()})
    await gateway.connect_all()

    preview = gateway.preview(ToolCall(id="c1", name="echo__remove"), {"item": "notes.txt"})

    assert preview is not None
    assert preview.new_text == "keep\n"
    assert gateway.preview(ToolCall(id="c2", name="echo__echo"), {"text": "x"}) is None


@pytest.mark.asyncio
async def test_aclose_resets_connections() -> None:
    factory = FakeProviderFactory({"web": [RemoteTool("fetch")]})
    gateway = ToolProtocolGateway([_remote("web", "http://localhost:8000/mcp")], client_factory=factory)
    await gateway.connect_all()

    await gateway.aclose()

    assert gateway.active_tools() == []
    assert gateway.connections()[0].status is ProviderStatus.PENDING


def test_duplicate_provider_names_are_rejected() -> None:
    gateway = ToolProtocolGateway(in_process={"echo": EchoService()})

    with pytest.raises(ConfigurationError):
        gateway.add_provider(_remote("echo", "http://localhost:1/mcp"))


@pytest.mark.parametrize("name", ["", "bad__name", "trailing_"])
def test_ambiguous_provider_names_are_rejected(name: str) -> None:
    with pytest.raises(ConfigurationError):
        validate_provider_name(name)


def test_split_qualified_name_uses_first_separator() -> None:
    assert split_qualified_name("file-system__read__file") == ("file-system", "read__file")
    with pytest.raises(ValueError):
        split_qualified_name("plain")


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("http://host:9000/mcp", "http://host:9000/sse"),
        ("http://host:9000/api/", "http://host:9000/api/sse"),
        ("http://host:9000", "http://host:9000/sse"),
        ("https://host/v1/mcp?token=abc", "https://host/v1/sse?token=abc"),
    ],
)
def test_derive_event_stream_url(url: str, expected: str) -> None:
    assert derive_event_stream_url(url) == expected


def test_provider_config_infers_transport() -> None:
    assert ProviderConfig.from_mapping("a", {"url": "http://h/mcp"}).transport is TransportKind.REQUEST
    assert ProviderConfig.from_mapping("b", {"url": "http://h/sse"}).transport is TransportKind.EVENT_STREAM
    assert ProviderConfig.from_mapping("c", {"url": "http://h/x", "type": "sse"}).transport is TransportKind.EVENT_STREAM
    stdio = ProviderConfig.from_mapping("d", {"command": "srv", "args": "--stdio", "timeout": 5})
    assert stdio.transport is TransportKind.SUBPROCESS
    assert stdio.args == ("--stdio",)
    assert stdio.timeout_seconds == 5.0
    with pytest.raises(ConfigurationError):
        ProviderConfig.from_mapping("e", {})
