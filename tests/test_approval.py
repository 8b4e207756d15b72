"""Tests for the tool approval gate."""

from __future__ import annotations

import pytest

from termagent.ai.mcp.types import ToolDefinition
from termagent.ai.orchestration import ApprovalDecision, ApprovalGate, ApprovalRequest, parse_response
from termagent.ai.orchestration.approval import rejection_payload
from termagent.ai.tools import ChangePreview
from termagent.chat.message_model import ToolCall


def _definition(name: str = "terminal__execute_command", *, requires_confirmation: bool = True) -> ToolDefinition:
    provider, _, local = name.partition("__")
    return ToolDefinition(
        qualified_name=name,
        provider=provider,
        local_name=local,
        description="",
        parameters={"type": "object", "properties": {}},
        requires_confirmation=requires_confirmation,
    )


def _request() -> ApprovalRequest:
    call = ToolCall(id="call_1", name="terminal__execute_command", arguments='{"command": "ls"}')
    return ApprovalRequest(call=call, definition=_definition(), arguments={"command": "ls"})


@pytest.mark.parametrize(
    ("answer", "expected"),
    [
        ("", ApprovalDecision.YES),
        ("Y", ApprovalDecision.YES),
        (" yes ", ApprovalDecision.YES),
        ("n", ApprovalDecision.NO),
        ("No", ApprovalDecision.NO),
        ("c", ApprovalDecision.CANCEL),
        ("cancel", ApprovalDecision.CANCEL),
        ("maybe", None),
        (None, None),
    ],
)
def test_parse_response(answer: str | None, expected: ApprovalDecision | None) -> None:
    assert parse_response(answer) is expected


def test_requires_confirmation_follows_definition_and_settings() -> None:
    gate = ApprovalGate(confirm_tools=["todos__create_todos"])

    assert gate.requires_confirmation(_definition()) is True
    assert gate.requires_confirmation(_definition("todos__create_todos", requires_confirmation=False)) is True
    assert gate.requires_confirmation(_definition("todos__add_todos", requires_confirmation=False)) is False
    assert gate.requires_confirmation(None) is False
    assert ApprovalGate(auto_approve=True).requires_confirmation(_definition()) is False


@pytest.mark.asyncio
async def test_review_accepts_sync_and_async_prompts() -> None:
    async def async_prompt(request: ApprovalRequest) -> str:
        return "n"

    assert await ApprovalGate(lambda request: "y").review(_request()) is ApprovalDecision.YES
    assert await ApprovalGate(async_prompt).review(_request()) is ApprovalDecision.NO
    assert await ApprovalGate(lambda request: ApprovalDecision.CANCEL).review(_request()) is ApprovalDecision.CANCEL


@pytest.mark.asyncio
async def test_unrecognized_answers_are_asked_again_then_refused() -> None:
    answers = iter(["what?", "hmm", "y"])
    asked: list[str] = []

    def prompt(request: ApprovalRequest) -> str:
        asked.append(request.call.id)
        return next(answers)

    assert await ApprovalGate(prompt).review(_request()) is ApprovalDecision.YES
    assert len(asked) == 3

    stubborn = ApprovalGate(lambda request: "later", max_prompts=2)
    assert await stubborn.review(_request()) is ApprovalDecision.NO


@pytest.mark.asyncio
async def test_without_prompt_sensitive_calls_are_refused() -> None:
    assert await ApprovalGate().review(_request()) is ApprovalDecision.NO


def test_build_request_renders_diff_and_description() -> None:
    gate = ApprovalGate()
    call = ToolCall(id="call_2", name="file-system__edit_file")
    preview = ChangePreview("notes.txt", "alpha\nbeta\n", "alpha\ngamma\n")

    request = gate.build_request(call, None, {"path": "notes.txt"}, preview)

    assert request.diff is not None
    assert "--- a/notes.txt" in request.diff
    assert "-beta" in request.diff and "+gamma" in request.diff
    assert request.description == 'Tool: file-system__edit_file\nParameters:\n{\n  "path": "notes.txt"\n}'


def test_identical_preview_produces_no_diff() -> None:
    request = ApprovalGate().build_request(ToolCall(id="c", name="x__y"), None, {}, ChangePreview("f", "same", "same"))

    assert request.diff is None


def test_rejection_payload_shape() -> None:
    assert rejection_payload("terminal__execute_command") == {
        "error": "rejected",
        "rejected": True,
        "tool": "terminal__execute_command",
        "reason": "The user declined to run this tool.",
    }
