"""Tests for the command line wiring helpers."""

from __future__ import annotations

import asyncio
import io
import json
import logging
import threading
from pathlib import Path
from typing import Any, cast

import pytest
from helpers import ScriptedStreamClient, text_response

from termagent import app
from termagent.ai.client import AIClient, ApproxByteCounter
from termagent.ai.mcp import ProviderStatus
from termagent.ai.services import CompletionSummarizer
from termagent.chat.message_model import AssistantMessage, ToolCall, ToolMessage
from termagent.services.settings import SecretVault, Settings, SettingsStore
from termagent.utils import logging as logging_utils


class _SessionClient(ScriptedStreamClient):
    """Scripted client with the extra surface ``build_session`` touches."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.closed = False

    def get_token_counter(self, model: str | None = None) -> ApproxByteCounter:
        return ApproxByteCounter()

    async def complete(self, messages, *, temperature=None, max_completion_tokens=None) -> str:
        return "summary"

    async def list_models(self, *, force_refresh: bool = False) -> list[str]:
        return ["m-1", "m-2"]

    async def aclose(self) -> None:
        self.closed = True


def _session(tmp_path: Path, client: _SessionClient, **overrides: Any) -> tuple[app.Session, app.TerminalPresenter, io.StringIO]:
    stream = io.StringIO()
    presenter = app.TerminalPresenter(stream)
    settings = Settings(api_key="k", model="m-1", **overrides)
    session = app.build_session(settings, presenter=presenter, cwd=tmp_path, client=cast(AIClient, client))
    return session, presenter, stream


def test_coerce_cli_overrides_uses_field_types() -> None:
    overrides = app._coerce_cli_overrides(
        [
            "temperature=0.5",
            "max_tool_calls_per_turn=40",
            "auto_approve=yes",
            "max_completion_tokens=none",
            "confirm_tools=[\"todos__create_todos\"]",
            "mcp_servers={\"docs\": {\"url\": \"http://localhost:9000/mcp\"}}",
            "model=gpt-4o",
        ]
    )

    assert overrides == {
        "temperature": 0.5,
        "max_tool_calls_per_turn": 40,
        "auto_approve": True,
        "max_completion_tokens": None,
        "confirm_tools": ["todos__create_todos"],
        "mcp_servers": {"docs": {"url": "http://localhost:9000/mcp"}},
        "model": "gpt-4o",
    }


@pytest.mark.parametrize("entry", ["model", "unknown=1", "auto_approve=maybe", "=value"])
def test_coerce_cli_overrides_rejects_bad_entries(entry: str) -> None:
    with pytest.raises(ValueError):
        app._coerce_cli_overrides([entry])


def test_extract_file_references(tmp_path: Path) -> None:
    (tmp_path / "notes.md").write_text("remember this", encoding="utf-8")

    cleaned, attachments, missing = app.extract_file_references("summarize @notes.md and @ghost.txt", cwd=tmp_path)

    assert cleaned == "summarize  and @ghost.txt"
    assert [(item.path, item.content) for item in attachments] == [("notes.md", "remember this")]
    assert missing == ["ghost.txt"]


def test_extract_file_references_keeps_text_when_only_a_reference(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("x", encoding="utf-8")

    cleaned, attachments, _ = app.extract_file_references("@a.txt", cwd=tmp_path)

    assert cleaned == "@a.txt"
    assert len(attachments) == 1


def test_dump_settings_redacts_api_key(tmp_path: Path) -> None:
    store = SettingsStore(tmp_path / "settings.json", vault=SecretVault(key_path=tmp_path / "settings.key"))
    output = io.StringIO()

    app._dump_settings(Settings(api_key="sk-abcdef"), store, overrides={"model": "x"}, stream=output)

    payload = json.loads(output.getvalue())
    assert payload["settings"]["api_key"] == "sk*****ef"
    assert payload["meta"]["cli_overrides"] == ["model"]
    assert payload["meta"]["secret_backend"] == "fernet"


@pytest.mark.asyncio
async def test_build_session_wires_builtin_providers(tmp_path: Path) -> None:
    client = _SessionClient([text_response("hi")])
    session, presenter, stream = _session(tmp_path, client, builtin_providers=["todos", "file-system"])

    await session.gateway.connect_all()
    presenter.report_connections(session.gateway)

    statuses = {connection.name: connection.status for connection in session.gateway.connections()}
    assert statuses == {"todos": ProviderStatus.CONNECTED, "file-system": ProviderStatus.CONNECTED}
    assert session.todos is not None
    assert session.orchestrator.budget_manager.summarizer is None
    assert "[todos] connected via in_process" in stream.getvalue()

    await session.aclose()
    assert client.closed


def test_summarize_mode_installs_a_summarizer(tmp_path: Path) -> None:
    session, _, _ = _session(tmp_path, _SessionClient([]), context_mode="summarize", builtin_providers=[])

    assert isinstance(session.orchestrator.budget_manager.summarizer, CompletionSummarizer)
    assert session.todos is None


@pytest.mark.asyncio
async def test_run_turn_attaches_references_and_prints_output(tmp_path: Path) -> None:
    (tmp_path / "notes.md").write_text("remember", encoding="utf-8")
    client = _SessionClient([text_response("Got ", "it")])
    session, presenter, stream = _session(tmp_path, client, builtin_providers=[])
    await session.gateway.connect_all()

    ok = await app.run_turn(session, presenter, "read @notes.md", cwd=tmp_path)

    assert ok is True
    assert "Got it" in stream.getvalue()
    assert session.prompt_builder.referenced_files == ("notes.md",)
    user_content = client.requests[0]["messages"][1]["content"]
    assert user_content == "--- notes.md ---\nremember\n\nread"


@pytest.mark.asyncio
async def test_commands_report_usage_models_and_clear(tmp_path: Path) -> None:
    client = _SessionClient([text_response("hello")])
    session, presenter, stream = _session(tmp_path, client, builtin_providers=["todos"])
    await session.gateway.connect_all()
    await app.run_turn(session, presenter, "hi", cwd=tmp_path)

    await app.handle_command(session, presenter, "/usage")
    await app.handle_command(session, presenter, "/models")
    await app.handle_command(session, presenter, "/tools")
    await app.handle_command(session, presenter, "/clear")
    await app.handle_command(session, presenter, "/nope")

    output = stream.getvalue()
    assert "Context: " in output
    assert "* m-1" in output and "  m-2" in output
    assert "todos__create_todos" in output
    assert "Conversation cleared." in output
    assert "Commands: /tools" in output
    assert len(session.orchestrator.log) == 0


def test_presenter_renders_tool_activity() -> None:
    stream = io.StringIO()
    presenter = app.TerminalPresenter(stream)
    call = ToolCall(id="c1", name="terminal__execute_command")

    presenter.on_text_chunk("Running")
    presenter.on_tool_call_started(call)
    presenter.on_tool_call_result(call, ToolMessage("c1", call.name, "{}", is_error=True))
    presenter.on_assistant_message(AssistantMessage())

    assert stream.getvalue() == (
        "Running\n"
        "-> terminal__execute_command\n"
        "<- terminal__execute_command: failed\n"
        "(no response)\n"
    )


def test_setup_logging_writes_to_the_configured_directory(tmp_path: Path) -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        path = logging_utils.setup_logging(logging.DEBUG, log_dir=tmp_path / "logs", force=True)
        logging.getLogger("termagent.test").info("hello log")
        for handler in root.handlers:
            handler.flush()

        assert path == tmp_path / "logs" / "termagent.log"
        assert logging_utils.get_log_path() == path
        assert "hello log" in path.read_text(encoding="utf-8")
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)


@pytest.mark.asyncio
async def test_line_reader_hands_an_abandoned_read_to_the_next_prompt() -> None:
    started, release = threading.Event(), threading.Event()
    prompts: list[str] = []
    echoed: list[str] = []

    def read(prompt: str) -> str:
        prompts.append(prompt)
        started.set()
        release.wait(5)
        return "list files"

    reader = app.LineReader(read, echo=echoed.append)
    approval = asyncio.create_task(reader.readline("Run this tool? "))
    await asyncio.to_thread(started.wait, 5)
    approval.cancel()
    with pytest.raises(asyncio.CancelledError):
        await approval

    next_line = asyncio.create_task(reader.readline("> "))
    await asyncio.sleep(0)
    release.set()

    assert await next_line == "list files"
    assert prompts == ["Run this tool? "]
    assert echoed == ["> "]


@pytest.mark.asyncio
async def test_line_reader_discards_an_answer_nobody_waited_for() -> None:
    answers = iter(["y", "list files"])
    prompts: list[str] = []

    def read(prompt: str) -> str:
        prompts.append(prompt)
        return next(answers)

    reader = app.LineReader(read)
    approval = asyncio.create_task(reader.readline("Run this tool? "))
    await asyncio.sleep(0)
    approval.cancel()
    with pytest.raises(asyncio.CancelledError):
        await approval
    assert reader._pending is not None
    await asyncio.wait({reader._pending})

    assert await reader.readline("> ") == "list files"
    assert prompts == ["Run this tool? ", "> "]
