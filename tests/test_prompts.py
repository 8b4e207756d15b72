"""Tests for system prompt composition and history summarization."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Sequence

import pytest

from termagent.ai.prompts import SystemPromptBuilder
from termagent.ai.services import CompletionSummarizer, condense_text, render_transcript
from termagent.chat.message_model import AssistantMessage, Attachment, ToolCall, ToolMessage, UserMessage


def test_base_prompt_includes_environment(prompt_builder: SystemPromptBuilder) -> None:
    prompt = prompt_builder.build()

    assert prompt.startswith("# Role")
    assert "- Working directory: /work/project" in prompt
    assert "- Current time: 2024-05-01 09:30:00" in prompt
    assert "# Referenced files" not in prompt
    assert "# Current plan" not in prompt
    assert "# User-provided role" not in prompt


def test_dynamic_sections_are_appended_in_order() -> None:
    plan = {"text": None}
    builder = SystemPromptBuilder(
        cwd="/repo",
        role="You review pull requests.",
        plan_provider=lambda: plan["text"],
        clock=lambda: datetime(2024, 1, 2, 3, 4, 5),
    )
    builder.add_referenced_files(["src/app.py", "README.md", "src/app.py"])
    plan["text"] = "[ ] 1. Read the diff (id: abc)"

    prompt = builder.build()

    role_at = prompt.index("# User-provided role\n\nYou review pull requests.")
    files_at = prompt.index("# Referenced files")
    plan_at = prompt.index("# Current plan\n\n[ ] 1. Read the diff (id: abc)")
    assert role_at < files_at < plan_at
    assert prompt.count("- src/app.py") == 1
    assert builder.referenced_files == ("src/app.py", "README.md")

    builder.clear_referenced_files()
    assert "# Referenced files" not in builder.build()


def test_condense_text_cuts_at_sentence_boundaries() -> None:
    text = "First sentence here.  Second   sentence follows. Third one is long enough to be dropped."

    assert condense_text("   ", max_chars=10) == "(empty)"
    assert condense_text(text, max_chars=50) == "First sentence here. Second sentence follows."
    assert condense_text("x" * 30, max_chars=10) == "xxxxxxx..."


def test_render_transcript_covers_every_message_kind() -> None:
    messages = [
        UserMessage("fix the build", attachments=(Attachment(path="Makefile", content="all:"),)),
        AssistantMessage("Looking.", tool_calls=(ToolCall(id="c1", name="terminal__execute_command", arguments='{"command": "make"}'),)),
        ToolMessage("c1", "terminal__execute_command", "error: missing target", is_error=True),
    ]

    transcript = render_transcript(messages)

    assert transcript.splitlines() == [
        "USER (attached: Makefile): fix the build",
        "ASSISTANT: Looking.",
        'ASSISTANT called terminal__execute_command {"command": "make"}',
        "TOOL terminal__execute_command error: error: missing target",
    ]


class _RecordingBackend:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    async def complete(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        temperature: float | None = None,
        max_completion_tokens: int | None = None,
    ) -> str:
        self.calls.append(
            {"messages": list(messages), "temperature": temperature, "max_completion_tokens": max_completion_tokens}
        )
        return "- user wants a green build"


@pytest.mark.asyncio
async def test_completion_summarizer_sends_transcript() -> None:
    backend = _RecordingBackend()
    summarizer = CompletionSummarizer(backend)

    summary = await summarizer.summarize([UserMessage("fix the build")])
    empty = await summarizer.summarize([])

    assert summary == "- user wants a green build"
    assert empty == ""
    [call] = backend.calls
    assert call["temperature"] == 0.0
    assert call["messages"][0]["role"] == "system"
    assert call["messages"][1] == {"role": "user", "content": "USER: fix the build"}
