"""System prompt composition.

The system message is rebuilt for every request: a static part (instructions,
working directory, time, optional role) and a dynamic part (referenced files
and the current plan).
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, List, Sequence

__all__ = ["SystemPromptBuilder", "base_instructions"]

PlanProvider = Callable[[], "str | None"]
Clock = Callable[[], datetime]


def base_instructions(*, cwd: str, time: str) -> str:
    """Static instructions shared by every request."""
    return f"""# Role

You are a professional programming assistant working in the user's terminal.
- You are proficient in many programming languages and frameworks.
- You give clear, accurate technical answers and focus on code quality.

# Environment

- Working directory: {cwd}
- Current time: {time}

# Tool Usage

- Use the available tools to inspect the project before answering questions about it.
- Read files before editing them; prefer small, targeted edits.
- Tools that change files or run commands may ask the user for approval. If a call is
  rejected, do not retry it unchanged; explain what you wanted to do instead.
- For multi-step work, keep the todo list current so the plan stays visible.
- Only report what the tools actually did."""


def _role_section(role: str) -> str:
    return f"# User-provided role\n\n{role.strip()}"


def _referenced_files_section(paths: Sequence[str]) -> str:
    file_list = "\n".join(f"- {path}" for path in paths)
    return (
        "# Referenced files\n\n"
        "The user referenced the following files with @ syntax:\n"
        f"{file_list}\n\n"
        "Their contents are attached to the user's messages."
    )


def _plan_section(plan: str) -> str:
    return f"# Current plan\n\n{plan}"


class SystemPromptBuilder:
    """Builds the per-request system message."""

    def __init__(
        self,
        *,
        cwd: Path | str | None = None,
        role: str | None = None,
        plan_provider: PlanProvider | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.cwd = str(cwd or Path.cwd())
        self.role = role
        self._plan_provider = plan_provider
        self._clock = clock or datetime.now
        self._referenced_files: List[str] = []

    @property
    def referenced_files(self) -> tuple[str, ...]:
        return tuple(self._referenced_files)

    def add_referenced_files(self, paths: Iterable[str]) -> None:
        for path in paths:
            if path not in self._referenced_files:
                self._referenced_files.append(path)

    def clear_referenced_files(self) -> None:
        self._referenced_files.clear()

    def build(self) -> str:
        timestamp = self._clock().strftime("%Y-%m-%d %H:%M:%S")
        sections = [base_instructions(cwd=self.cwd, time=timestamp)]
        if self.role and self.role.strip():
            sections.append(_role_section(self.role))
        if self._referenced_files:
            sections.append(_referenced_files_section(self._referenced_files))
        plan = self._plan_provider() if self._plan_provider is not None else None
        if plan:
            sections.append(_plan_section(plan))
        return "\n\n".join(sections)
