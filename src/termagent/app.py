"""Command line entry point: settings, wiring, and the interactive loop."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import re
import signal
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.client import AIClient
from .ai.errors import AgentError, ConfigurationError
from .ai.mcp import ProviderStatus, ToolProtocolGateway
from .ai.orchestration import (
    ApprovalGate,
    ApprovalRequest,
    Budget,
    ContextBudgetManager,
    ConversationOrchestrator,
    OrchestratorConfig,
    TurnCallbacks,
)
from .ai.prompts import SystemPromptBuilder
from .ai.services import CompletionSummarizer
from .ai.tools import FileSystemService, TerminalService, TodoService, ToolService
from .chat.message_model import AssistantMessage, Attachment, ToolCall, ToolMessage
from .services.checkpoint import InterruptFlag
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_FILE_REFERENCE = re.compile(r"@([^\s@]+)(?=\s|$)")
_EXIT_COMMANDS = {"/exit", "/quit"}


@dataclass(slots=True)
class Session:
    """Everything one interactive session owns."""

    settings: Settings
    client: AIClient
    gateway: ToolProtocolGateway
    orchestrator: ConversationOrchestrator
    prompt_builder: SystemPromptBuilder
    todos: TodoService | None
    interrupt: InterruptFlag

    async def aclose(self) -> None:
        await self.gateway.aclose()
        await self.client.aclose()


# ----------------------------------------------------------------------
# Terminal presentation
# ----------------------------------------------------------------------


class LineReader:
    """Reads stdin lines on a worker thread, one read at a time.

    A read abandoned by a cancelled caller keeps running; the next caller takes
    over that read instead of starting a second one on the same stdin. A line
    that arrived while nobody was waiting belonged to the abandoned prompt and is
    discarded.
    """

    def __init__(self, read: Callable[[str], str] = input, *, echo: Callable[[str], None] | None = None) -> None:
        self._read = read
        self._echo = echo
        self._pending: asyncio.Future[str] | None = None

    async def readline(self, prompt: str) -> str:
        pending = self._pending
        if pending is not None and pending.done():
            _discard_stale_read(pending)
            pending = None
        if pending is None:
            pending = asyncio.ensure_future(asyncio.to_thread(self._read, prompt))
            self._pending = pending
        elif self._echo is not None:
            self._echo(prompt)
        try:
            return await asyncio.shield(pending)
        finally:
            if pending.done():
                self._pending = None


def _discard_stale_read(pending: asyncio.Future[str]) -> None:
    error = None if pending.cancelled() else pending.exception()
    _LOGGER.debug("Discarding input from an abandoned prompt (%s)", error or "line")


class TerminalPresenter:
    """Writes turn notifications to a text stream and asks approval questions."""

    def __init__(
        self,
        stream: TextIO | None = None,
        *,
        show_reasoning: bool = False,
        reader: LineReader | None = None,
    ) -> None:
        self.stream = stream or sys.stdout
        self.show_reasoning = show_reasoning
        self.reader = reader or LineReader(echo=self.write)
        self._mid_line = False

    def callbacks(self) -> TurnCallbacks:
        return TurnCallbacks(
            on_text_chunk=self.on_text_chunk,
            on_reasoning_chunk=self.on_reasoning_chunk,
            on_assistant_message=self.on_assistant_message,
            on_tool_call_started=self.on_tool_call_started,
            on_tool_call_result=self.on_tool_call_result,
            on_error=self.on_error,
        )

    def write(self, text: str) -> None:
        self.stream.write(text)
        self.stream.flush()
        self._mid_line = bool(text) and not text.endswith("\n")

    def line(self, text: str = "") -> None:
        if self._mid_line:
            self.write("\n")
        self.write(text + "\n")

    def on_text_chunk(self, text: str) -> None:
        self.write(text)

    def on_reasoning_chunk(self, text: str) -> None:
        if self.show_reasoning:
            self.write(text)

    def on_assistant_message(self, message: AssistantMessage) -> None:
        if self._mid_line:
            self.write("\n")
        if not message.tool_calls and not message.content:
            self.line("(no response)")

    def on_tool_call_started(self, call: ToolCall) -> None:
        self.line(f"-> {call.name}")

    def on_tool_call_result(self, call: ToolCall, message: ToolMessage) -> None:
        status = "failed" if message.is_error else "ok"
        self.line(f"<- {call.name}: {status}")

    def on_error(self, error: BaseException) -> None:
        self.line(f"Error: {error}")

    async def ask_approval(self, request: ApprovalRequest) -> str:
        self.line(request.describe())
        if request.diff:
            self.line(request.diff)
        return await self.reader.readline("Run this tool? [Y]es / [n]o / [c]ancel turn: ")

    def report_connections(self, gateway: ToolProtocolGateway) -> None:
        for connection in gateway.connections():
            if connection.status is ProviderStatus.CONNECTED:
                self.line(
                    f"[{connection.name}] connected via {connection.describe_transport()} "
                    f"({len(connection.tools)} tools)"
                )
            else:
                self.line(f"[{connection.name}] {connection.status.value}: {connection.error or 'not connected'}")


# ----------------------------------------------------------------------
# Wiring
# ----------------------------------------------------------------------


def build_builtin_services(settings: Settings, *, cwd: Path) -> Dict[str, ToolService]:
    services: Dict[str, ToolService] = {}
    for name in settings.builtin_providers:
        if name == "file-system":
            services[name] = FileSystemService(cwd, timeout_seconds=settings.tool_timeout_seconds)
        elif name == "terminal":
            services[name] = TerminalService(cwd, command_timeout_seconds=settings.command_timeout_seconds)
        elif name == "todos":
            services[name] = TodoService()
    return services


def build_session(
    settings: Settings,
    *,
    presenter: TerminalPresenter,
    cwd: Path | None = None,
    client: AIClient | None = None,
) -> Session:
    """Wire client, gateway, budget, approval, and orchestrator from *settings*."""

    root = (cwd or Path.cwd()).resolve()
    ai_client = client or AIClient(settings.client_settings())
    services = build_builtin_services(settings, cwd=root)
    todos = services.get("todos")
    gateway = ToolProtocolGateway(settings.provider_configs(), in_process=services)

    summarizer = CompletionSummarizer(ai_client) if settings.context_mode == "summarize" else None
    budget_manager = ContextBudgetManager(
        Budget(settings.max_context_tokens, settings.context_target_ratio),
        counter=ai_client.get_token_counter(),
        summarizer=summarizer,
    )
    prompt_builder = SystemPromptBuilder(
        cwd=root,
        role=settings.role,
        plan_provider=todos.plan_state if isinstance(todos, TodoService) else None,
    )
    approval = ApprovalGate(
        presenter.ask_approval,
        confirm_tools=settings.confirm_tools,
        auto_approve=settings.auto_approve,
    )
    interrupt = InterruptFlag()
    orchestrator = ConversationOrchestrator(
        ai_client,
        gateway,
        budget_manager,
        prompt_builder=prompt_builder,
        approval_gate=approval,
        config=OrchestratorConfig(
            max_tool_calls_per_turn=settings.max_tool_calls_per_turn,
            stream_retry_attempts=settings.stream_retry_attempts,
            stream_retry_backoff_seconds=settings.stream_retry_backoff_seconds,
            temperature=settings.temperature,
            max_completion_tokens=settings.max_completion_tokens,
        ),
        callbacks=presenter.callbacks(),
        should_interrupt=interrupt,
    )
    return Session(
        settings=settings,
        client=ai_client,
        gateway=gateway,
        orchestrator=orchestrator,
        prompt_builder=prompt_builder,
        todos=todos if isinstance(todos, TodoService) else None,
        interrupt=interrupt,
    )


def extract_file_references(text: str, *, cwd: Path) -> tuple[str, List[Attachment], List[str]]:
    """Turn ``@path`` tokens into attachments; unreadable references are reported, not attached."""

    attachments: List[Attachment] = []
    missing: List[str] = []
    for reference in _FILE_REFERENCE.findall(text):
        path = (cwd / reference).expanduser()
        if not path.is_file():
            missing.append(reference)
            continue
        try:
            loaded = Attachment.from_path(path)
        except OSError as exc:
            _LOGGER.warning("Cannot attach %s: %s", reference, exc)
            missing.append(reference)
            continue
        attachments.append(
            Attachment(path=reference, content=loaded.content, kind=loaded.kind, mime_type=loaded.mime_type)
        )
    attached = {item.path for item in attachments}

    def _strip(match: re.Match[str]) -> str:
        return "" if match.group(1) in attached else match.group(0)

    cleaned = _FILE_REFERENCE.sub(_strip, text).strip()
    return cleaned or text.strip(), attachments, missing


# ----------------------------------------------------------------------
# Interactive loop
# ----------------------------------------------------------------------


async def run_turn(session: Session, presenter: TerminalPresenter, text: str, *, cwd: Path) -> bool:
    cleaned, attachments, missing = extract_file_references(text, cwd=cwd)
    for reference in missing:
        presenter.line(f"(skipping @{reference}: not a readable file)")
    session.prompt_builder.add_referenced_files(item.path for item in attachments)
    session.interrupt.clear()

    loop = asyncio.get_running_loop()

    def _on_sigint() -> None:
        session.interrupt.set()
        session.orchestrator.cancel()

    installed = False
    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, _on_sigint)
        installed = True
    try:
        outcome = await session.orchestrator.process_turn(cleaned, attachments)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)
    presenter.line()
    if outcome.status == "cancelled":
        presenter.line("(turn cancelled)")
    elif outcome.status == "truncated":
        presenter.line("(tool call limit reached)")
    budget = outcome.budget
    if budget is not None and budget.trimmed:
        presenter.line(f"(dropped {budget.dropped_count} earlier message(s) to stay within the context budget)")
    return outcome.status != "error"


async def handle_command(session: Session, presenter: TerminalPresenter, command: str) -> None:
    name = command.split()[0].lower()
    if name == "/tools":
        presenter.report_connections(session.gateway)
        for definition in session.gateway.active_tools():
            flag = " (approval)" if definition.requires_confirmation else ""
            presenter.line(f"  {definition.qualified_name}{flag}")
    elif name == "/clear":
        session.orchestrator.reset()
        session.prompt_builder.clear_referenced_files()
        if session.todos is not None:
            session.todos.clear()
        presenter.line("Conversation cleared.")
    elif name == "/usage":
        usage = session.orchestrator.usage()
        presenter.line(
            f"Context: {usage['used']} / {usage['max_allowed']} tokens ({usage['percentage']}%), "
            f"last request {usage['last_request_tokens']} tokens"
        )
        if usage["near_limit"]:
            presenter.line("Context is close to the limit; consider /clear.")
    elif name == "/models":
        try:
            models = await session.client.list_models()
        except Exception as exc:
            presenter.line(f"Cannot list models: {exc}")
            return
        for model in models:
            marker = "*" if model == session.settings.model else " "
            presenter.line(f"{marker} {model}")
    else:
        presenter.line("Commands: /tools, /clear, /usage, /models, /exit")


async def run_repl(session: Session, presenter: TerminalPresenter, *, cwd: Path) -> None:
    presenter.report_connections(session.gateway)
    presenter.line("Type a message, @path to attach a file, /exit to quit.")
    while True:
        try:
            text = await presenter.reader.readline("> ")
        except EOFError:
            presenter.line()
            return
        text = text.strip()
        if not text:
            continue
        if text.lower() in _EXIT_COMMANDS:
            return
        if text.startswith("/"):
            await handle_command(session, presenter, text)
            continue
        await run_turn(session, presenter, text, cwd=cwd)


async def _run(settings: Settings, *, once: str | None) -> int:
    presenter = TerminalPresenter()
    cwd = Path.cwd()
    session = build_session(settings, presenter=presenter, cwd=cwd)
    try:
        await session.gateway.connect_all()
        if once is not None:
            presenter.report_connections(session.gateway)
            return 0 if await run_turn(session, presenter, once, cwd=cwd) else 1
        await run_repl(session, presenter, cwd=cwd)
        return 0
    finally:
        await session.aclose()


# ----------------------------------------------------------------------
# Entry point and settings helpers
# ----------------------------------------------------------------------


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the ``termagent`` console script."""

    args = _parse_cli_args(argv)
    debug = args.debug or _env_flag("TERMAGENT_DEBUG")
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("TERMAGENT_SETTINGS_PATH")
    store = SettingsStore(Path(settings_path).expanduser() if settings_path else None)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    try:
        settings = store.load(overrides=cli_overrides or None)
    except ConfigurationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    if args.dump_settings:
        _dump_settings(settings, store, overrides=cli_overrides)
        return
    if settings.debug_logging and not debug:
        configure_logging(True, force=True)
    if not settings.api_key:
        print("No API key configured; use --set api_key=... or TERMAGENT_API_KEY.", file=sys.stderr)
        raise SystemExit(2)

    try:
        code = asyncio.run(_run(settings, once=args.once))
    except KeyboardInterrupt:
        code = 130
    except (AgentError, ConfigurationError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        code = 1
    raise SystemExit(code)


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="termagent",
        description="Chat with a language model that can use local and MCP tools.",
    )
    parser.add_argument("--settings-path", metavar="PATH", help="Override the default ~/.termagent/settings.json path.")
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings (with secrets redacted) and exit.",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument("--once", metavar="TEXT", help="Run a single turn with TEXT and exit.")
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(type_hints.get(key, fields[key].type), raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    if _allows_none(annotation) and raw_value.lower() in {"none", "null"}:
        return None
    target = _resolve_annotation(annotation)
    if target is bool:
        return _parse_bool(raw_value)
    if target is int:
        return int(raw_value, 10)
    if target is float:
        return float(raw_value)
    if target is list:
        try:
            return json.loads(raw_value or "[]")
        except json.JSONDecodeError as exc:
            raise ValueError("List overrides must be valid JSON arrays") from exc
    if target is dict:
        try:
            return json.loads(raw_value or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
    return raw_value


def _allows_none(annotation: Any) -> bool:
    return type(None) in get_args(annotation)


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {list, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args or not isinstance(args[0], type):
        return str
    return _resolve_annotation(args[0])


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in _TRUE_VALUES


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(settings.api_key)
    meta = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides),
        "environment_variables": sorted(name for name in os.environ if name.startswith("TERMAGENT_")),
    }
    json.dump({"settings": payload, "meta": meta}, destination, indent=2)
    destination.write("\n")


if __name__ == "__main__":  # pragma: no cover
    main()
