"""Unified diff rendering for approval prompts."""

from __future__ import annotations

import difflib
from dataclasses import dataclass


@dataclass(slots=True)
class DiffBuilder:
    """Build a unified diff string between two versions of a file."""

    default_filename: str = "file.txt"
    default_context_lines: int = 3

    def run(self, original: str, updated: str, *, filename: str | None = None, context: int | None = None) -> str:
        """Return the diff, or an empty string when the texts are identical."""

        if original is None or updated is None:
            raise ValueError("Both original and updated text must be provided")

        source_name = self._normalize_filename(filename)
        context_lines = self._normalize_context(context)
        diff = difflib.unified_diff(
            original.splitlines(),
            updated.splitlines(),
            fromfile=f"a/{source_name}",
            tofile=f"b/{source_name}",
            lineterm="",
            n=context_lines,
        )
        return "\n".join(diff)

    def _normalize_context(self, value: int | None) -> int:
        candidate = self.default_context_lines if value is None else int(value)
        return max(0, candidate)

    def _normalize_filename(self, name: str | None) -> str:
        if isinstance(name, str) and name.strip():
            return name.strip().lstrip("/")
        return self.default_filename


def build_unified_diff(original: str, updated: str, *, filename: str | None = None, context: int = 3) -> str:
    return DiffBuilder().run(original, updated, filename=filename, context=context)
