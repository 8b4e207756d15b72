"""Built-in in-process tool providers.

Example:
    from termagent.ai.tools import FileSystemService

    service = FileSystemService(root=".")
    response = await service.handle_request(
        {"id": 1, "method": "read_file", "params": {"path": "README.md"}}
    )
"""

from .diff_builder import DiffBuilder, build_unified_diff
from .errors import EnvelopeCode, ErrorCode, ToolError
from .file_system import FileSystemService
from .registry import DuplicateToolError, ToolNotFoundError, ToolRegistry
from .service import ToolService
from .terminal import TerminalService
from .todos import Todo, TodoService
from .types import ChangePreview, SimpleTool, Tool, ToolSpec

__all__ = [
    "ChangePreview",
    "DiffBuilder",
    "DuplicateToolError",
    "EnvelopeCode",
    "ErrorCode",
    "FileSystemService",
    "SimpleTool",
    "TerminalService",
    "Todo",
    "TodoService",
    "Tool",
    "ToolError",
    "ToolNotFoundError",
    "ToolRegistry",
    "ToolService",
    "ToolSpec",
    "build_unified_diff",
]
