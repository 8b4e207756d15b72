"""Built-in file-system tool provider."""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
import re
import shutil
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping

from .errors import ErrorCode, ToolError, file_not_found, invalid_parameter
from .service import ToolService
from .types import ChangePreview, ToolSpec

__all__ = ["FileSystemService", "IGNORED_DIRECTORIES"]

LOGGER = logging.getLogger(__name__)

IGNORED_DIRECTORIES: frozenset[str] = frozenset(
    {".git", ".hg", ".svn", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache", ".pytest_cache", "dist", "build"}
)
_BINARY_SNIFF_BYTES = 8_000
_MAX_SEARCH_FILE_BYTES = 1_000_000
_MAX_LINE_PREVIEW = 200

_PATH_PROPERTY = {"type": "string", "description": 'File path, relative to the project root or absolute. Example: "src/app.py"'}
_ENCODING_PROPERTY = {"type": "string", "description": 'File encoding. Example: "utf-8"', "default": "utf-8"}


class FileSystemService(ToolService):
    """Reads, searches, and edits files under a project root."""

    def __init__(
        self,
        root: Path | str | None = None,
        *,
        max_read_lines: int = 500,
        max_results: int = 100,
        timeout_seconds: float | None = 30.0,
    ) -> None:
        self.root = Path(root or Path.cwd()).expanduser().resolve()
        self.max_read_lines = max(1, int(max_read_lines))
        self.max_results = max(1, int(max_results))
        super().__init__("file-system", timeout_seconds=timeout_seconds)

    def _register_tools(self) -> None:
        register = self.registry.register_function
        register(
            ToolSpec(
                name="read_file",
                description=(
                    "Read a range of lines from a text file. Reading about 300 lines at a time works well. "
                    "The response includes line numbers."
                ),
                parameters={
                    "type": "object",
                    "properties": {
                        "path": _PATH_PROPERTY,
                        "start_line": {"type": "integer", "minimum": 1, "description": "First line to read (1-based)."},
                        "end_line": {"type": "integer", "minimum": 1, "description": "Last line to read (inclusive)."},
                        "encoding": _ENCODING_PROPERTY,
                    },
                    "required": ["path"],
                },
            ),
            self._read_file,
        )
        register(
            ToolSpec(
                name="list_directory",
                description="List a directory as a tree to understand the project structure.",
                parameters={
                    "type": "object",
                    "properties": {
                        "path": {"type": "string", "description": 'Directory to list. Example: "src/"', "default": "."},
                        "depth": {"type": "integer", "minimum": 1, "maximum": 6, "default": 2},
                    },
                    "required": [],
                },
            ),
            self._list_directory,
        )
        register(
            ToolSpec(
                name="search_files",
                description=(
                    "Search for files by name. Accepts a partial file name or a glob pattern. "
                    "Use it when the user mentions a file without giving its path."
                ),
                parameters={
                    "type": "object",
                    "properties": {
                        "query": {"type": "string", "minLength": 1, "description": 'File name or glob. Example: "service.py"'},
                        "path": {"type": "string", "description": "Directory to search from.", "default": "."},
                    },
                    "required": ["query"],
                },
            ),
            self._search_files,
        )
        register(
            ToolSpec(
                name="search_file_content",
                description="Find files whose content contains a keyword or matches a regular expression.",
                parameters={
                    "type": "object",
                    "properties": {
                        "query": {"type": "string", "minLength": 1, "description": 'Text to search for. Example: "handle_request"'},
                        "path": {"type": "string", "description": "Directory to search from.", "default": "."},
                        "regex": {"type": "boolean", "default": False},
                        "case_sensitive": {"type": "boolean", "default": False},
                    },
                    "required": ["query"],
                },
            ),
            self._search_file_content,
        )
        register(
            ToolSpec(
                name="create_file",
                description=(
                    "Create a new file with optional content. Parent directories are created when missing. "
                    "For large files, create part of the content first and extend it with edit_file."
                ),
                parameters={
                    "type": "object",
                    "properties": {
                        "path": _PATH_PROPERTY,
                        "content": {"type": "string", "default": ""},
                        "overwrite": {"type": "boolean", "default": False},
                        "encoding": _ENCODING_PROPERTY,
                    },
                    "required": ["path"],
                },
                requires_confirmation=True,
                mutates_content=True,
            ),
            self._create_file,
            preview=self._preview_create,
        )
        register(
            ToolSpec(
                name="edit_file",
                description=(
                    "Replace a range of lines in a file. Read the file first to get current line numbers, "
                    "and read it again after editing to verify the change. Use an empty new_content to delete "
                    "lines, or end_line = start_line - 1 to insert before start_line."
                ),
                parameters={
                    "type": "object",
                    "properties": {
                        "path": _PATH_PROPERTY,
                        "start_line": {"type": "integer", "minimum": 1, "description": "First line to replace (1-based)."},
                        "end_line": {"type": "integer", "minimum": 0, "description": "Last line to replace (inclusive)."},
                        "new_content": {"type": "string", "description": "Replacement text."},
                        "encoding": _ENCODING_PROPERTY,
                    },
                    "required": ["path", "start_line", "end_line", "new_content"],
                },
                requires_confirmation=True,
                mutates_content=True,
            ),
            self._edit_file,
            preview=self._preview_edit,
        )
        register(
            ToolSpec(
                name="delete_file",
                description="Delete a file or directory. Non-empty directories require recursive=true.",
                parameters={
                    "type": "object",
                    "properties": {
                        "path": _PATH_PROPERTY,
                        "recursive": {"type": "boolean", "default": False},
                    },
                    "required": ["path"],
                },
                requires_confirmation=True,
                mutates_content=True,
            ),
            self._delete_file,
            preview=self._preview_delete,
        )
        register(
            ToolSpec(
                name="create_directory",
                description="Create a directory, including missing parents by default.",
                parameters={
                    "type": "object",
                    "properties": {
                        "path": _PATH_PROPERTY,
                        "recursive": {"type": "boolean", "default": True},
                    },
                    "required": ["path"],
                },
            ),
            self._create_directory,
        )

    # ------------------------------------------------------------------
    # Read-only tools
    # ------------------------------------------------------------------

    def _read_file(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        path = self._resolve(params["path"])
        text = self._read_text(path, params.get("encoding") or "utf-8")
        lines = text.splitlines()
        total = len(lines)
        if total == 0:
            return {"path": self._display(path), "start_line": 0, "end_line": 0, "total_lines": 0, "truncated": False, "content": ""}
        start = int(params.get("start_line") or 1)
        requested_end = params.get("end_line")
        end = int(requested_end) if requested_end is not None else total
        if start > max(total, 1):
            raise ToolError(
                ErrorCode.INVALID_LINE_RANGE,
                f"start_line {start} is beyond the end of the file ({total} lines)",
                {"total_lines": total},
            )
        if end < start:
            raise ToolError(ErrorCode.INVALID_LINE_RANGE, "end_line must not be smaller than start_line")
        end = min(end, total, start + self.max_read_lines - 1)
        width = len(str(end)) if end else 1
        numbered = [f"{number:>{width}} | {lines[number - 1]}" for number in range(start, end + 1)]
        return {
            "path": self._display(path),
            "start_line": start,
            "end_line": end,
            "total_lines": total,
            "truncated": end < total and (requested_end is None or end < int(requested_end)),
            "content": "\n".join(numbered),
        }

    def _list_directory(self, params: Mapping[str, Any]) -> str:
        path = self._resolve(params.get("path") or ".")
        if not path.exists():
            raise file_not_found(self._display(path))
        if not path.is_dir():
            raise ToolError(ErrorCode.NOT_A_DIRECTORY, f"Not a directory: {self._display(path)}")
        depth = int(params.get("depth") or 2)
        lines = [f"{self._display(path)}/"]
        budget = [self.max_results * 5]
        self._render_tree(path, depth, 1, lines, budget)
        if budget[0] <= 0:
            lines.append("... (listing truncated)")
        return "\n".join(lines)

    def _render_tree(self, directory: Path, depth: int, level: int, lines: List[str], budget: List[int]) -> None:
        try:
            entries = sorted(directory.iterdir(), key=lambda item: (not item.is_dir(), item.name.lower()))
        except PermissionError:
            lines.append(f"{'  ' * level}- (permission denied)")
            return
        for entry in entries:
            if budget[0] <= 0:
                return
            if entry.is_dir() and entry.name in IGNORED_DIRECTORIES:
                continue
            budget[0] -= 1
            indent = "  " * level
            if entry.is_dir():
                lines.append(f"{indent}- {entry.name}/")
                if level < depth:
                    self._render_tree(entry, depth, level + 1, lines, budget)
            else:
                lines.append(f"{indent}- {entry.name} ({_format_size(entry.stat().st_size)})")

    async def _search_files(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._search_files_sync, params)

    def _search_files_sync(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        base = self._resolve_directory(params.get("path") or ".")
        query = str(params["query"]).strip()
        is_glob = any(char in query for char in "*?[")
        needle = query.lower()
        matches: List[str] = []
        truncated = False
        for candidate in self._walk_files(base):
            name = candidate.name
            hit = fnmatch.fnmatch(name, query) if is_glob else needle in name.lower()
            if not hit:
                continue
            if len(matches) >= self.max_results:
                truncated = True
                break
            matches.append(self._display(candidate))
        return {"query": query, "matches": matches, "truncated": truncated}

    async def _search_file_content(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._search_file_content_sync, params)

    def _search_file_content_sync(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        base = self._resolve_directory(params.get("path") or ".")
        query = str(params["query"])
        flags = 0 if params.get("case_sensitive") else re.IGNORECASE
        source = query if params.get("regex") else re.escape(query)
        try:
            pattern = re.compile(source, flags)
        except re.error as exc:
            raise ToolError(ErrorCode.PATTERN_INVALID, f"Invalid regular expression: {exc}") from exc

        matches: List[Dict[str, Any]] = []
        truncated = False
        for candidate in self._walk_files(base):
            if truncated:
                break
            try:
                if candidate.stat().st_size > _MAX_SEARCH_FILE_BYTES or _is_binary(candidate):
                    continue
                text = candidate.read_text(encoding="utf-8", errors="replace")
            except OSError:
                continue
            for number, line in enumerate(text.splitlines(), start=1):
                if not pattern.search(line):
                    continue
                if len(matches) >= self.max_results:
                    truncated = True
                    break
                matches.append({"path": self._display(candidate), "line": number, "text": line.strip()[:_MAX_LINE_PREVIEW]})
        return {"query": query, "matches": matches, "truncated": truncated}

    # ------------------------------------------------------------------
    # Mutating tools
    # ------------------------------------------------------------------

    def _create_file(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        path = self._resolve(params["path"])
        content = str(params.get("content") or "")
        if path.exists() and not params.get("overwrite"):
            raise ToolError(
                ErrorCode.FILE_EXISTS,
                f"File already exists: {self._display(path)}. Use edit_file or set overwrite=true.",
            )
        if path.is_dir():
            raise ToolError(ErrorCode.FILE_EXISTS, f"A directory exists at {self._display(path)}")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding=params.get("encoding") or "utf-8")
        LOGGER.info("Created %s", path)
        return {"path": self._display(path), "lines": len(content.splitlines()), "bytes": len(content.encode("utf-8"))}

    def _preview_create(self, params: Mapping[str, Any]) -> ChangePreview:
        path = self._resolve(params["path"])
        old_text = ""
        if path.is_file():
            old_text = self._read_text(path, params.get("encoding") or "utf-8")
        return ChangePreview(self._display(path), old_text, str(params.get("content") or ""))

    def _edit_file(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        path = self._resolve(params["path"])
        encoding = params.get("encoding") or "utf-8"
        original = self._read_text(path, encoding)
        updated, removed, inserted = _apply_line_edit(
            original,
            int(params["start_line"]),
            int(params["end_line"]),
            str(params.get("new_content") or ""),
        )
        path.write_text(updated, encoding=encoding)
        LOGGER.info("Edited %s (lines %s-%s)", path, params["start_line"], params["end_line"])
        return {
            "path": self._display(path),
            "lines_removed": removed,
            "lines_inserted": inserted,
            "total_lines": len(updated.splitlines()),
        }

    def _preview_edit(self, params: Mapping[str, Any]) -> ChangePreview:
        path = self._resolve(params["path"])
        original = self._read_text(path, params.get("encoding") or "utf-8")
        updated, _, _ = _apply_line_edit(
            original,
            int(params["start_line"]),
            int(params["end_line"]),
            str(params.get("new_content") or ""),
        )
        return ChangePreview(self._display(path), original, updated)

    def _delete_file(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        path = self._resolve(params["path"])
        if not path.exists():
            raise file_not_found(self._display(path))
        if path.is_dir():
            if any(path.iterdir()):
                if not params.get("recursive"):
                    raise invalid_parameter(
                        f"Directory {self._display(path)} is not empty; pass recursive=true to delete it"
                    )
                shutil.rmtree(path)
            else:
                path.rmdir()
            kind = "directory"
        else:
            path.unlink()
            kind = "file"
        LOGGER.info("Deleted %s %s", kind, path)
        return {"path": self._display(path), "deleted": kind}

    def _preview_delete(self, params: Mapping[str, Any]) -> ChangePreview | None:
        path = self._resolve(params["path"])
        if not path.is_file():
            return None
        return ChangePreview(self._display(path), self._read_text(path, "utf-8"), "")

    def _create_directory(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        path = self._resolve(params["path"])
        recursive = params.get("recursive", True)
        if path.exists() and not path.is_dir():
            raise ToolError(ErrorCode.FILE_EXISTS, f"A file exists at {self._display(path)}")
        try:
            path.mkdir(parents=bool(recursive), exist_ok=True)
        except FileNotFoundError as exc:
            raise invalid_parameter(f"Parent directory missing for {self._display(path)}; use recursive=true") from exc
        return {"path": self._display(path), "created": True}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve(self, raw: Any) -> Path:
        text = str(raw or "").strip()
        if not text:
            raise invalid_parameter("path must not be empty")
        candidate = Path(text).expanduser()
        if not candidate.is_absolute():
            candidate = self.root / candidate
        return candidate.resolve()

    def _resolve_directory(self, raw: Any) -> Path:
        path = self._resolve(raw)
        if not path.is_dir():
            raise ToolError(ErrorCode.NOT_A_DIRECTORY, f"Not a directory: {self._display(path)}")
        return path

    def _display(self, path: Path) -> str:
        try:
            relative = path.relative_to(self.root)
        except ValueError:
            return str(path)
        return relative.as_posix() or "."

    def _read_text(self, path: Path, encoding: str) -> str:
        if not path.exists():
            raise file_not_found(self._display(path))
        if path.is_dir():
            raise invalid_parameter(f"{self._display(path)} is a directory")
        if _is_binary(path):
            raise ToolError(ErrorCode.BINARY_FILE, f"{self._display(path)} looks like a binary file")
        try:
            return path.read_text(encoding=encoding)
        except LookupError as exc:
            raise invalid_parameter(f"Unknown encoding: {encoding}") from exc
        except UnicodeDecodeError as exc:
            raise invalid_parameter(f"Cannot decode {self._display(path)} as {encoding}") from exc

    def _walk_files(self, base: Path) -> Iterator[Path]:
        for current, directories, files in os.walk(base):
            directories[:] = sorted(name for name in directories if name not in IGNORED_DIRECTORIES)
            for name in sorted(files):
                yield Path(current) / name


def _apply_line_edit(original: str, start_line: int, end_line: int, new_content: str) -> tuple[str, int, int]:
    lines = original.splitlines(keepends=True)
    total = len(lines)
    if start_line < 1 or start_line > total + 1:
        raise ToolError(
            ErrorCode.INVALID_LINE_RANGE,
            f"start_line must be between 1 and {total + 1}",
            {"total_lines": total},
        )
    if end_line < start_line - 1 or end_line > total:
        raise ToolError(
            ErrorCode.INVALID_LINE_RANGE,
            f"end_line must be between {start_line - 1} and {total}",
            {"total_lines": total},
        )
    replacement = new_content.splitlines(keepends=True)
    has_tail = end_line < total
    if replacement and not replacement[-1].endswith(("\n", "\r")) and has_tail:
        replacement[-1] += "\n"
    if start_line > 1 and not lines[start_line - 2].endswith(("\n", "\r")) and replacement:
        lines[start_line - 2] += "\n"
    updated = lines[: start_line - 1] + replacement + lines[end_line:]
    return "".join(updated), end_line - start_line + 1, len(replacement)


def _is_binary(path: Path) -> bool:
    try:
        with path.open("rb") as handle:
            return b"\0" in handle.read(_BINARY_SNIFF_BYTES)
    except OSError:
        return False


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB"):
        if value < 1024 or unit == "MB":
            return f"{int(value)} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"
