"""Built-in terminal tool provider."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Mapping

from .errors import ErrorCode, ToolError, invalid_parameter
from .service import ToolService
from .types import ToolSpec

__all__ = ["TerminalService"]

LOGGER = logging.getLogger(__name__)

_STDOUT_TAIL_CHARS = 4_000
_STDERR_TAIL_CHARS = 2_000


class TerminalService(ToolService):
    """Runs shell commands in a subprocess and reports their output."""

    def __init__(
        self,
        root: Path | str | None = None,
        *,
        command_timeout_seconds: float = 120.0,
    ) -> None:
        self.root = Path(root or Path.cwd()).expanduser().resolve()
        self.command_timeout_seconds = command_timeout_seconds
        # execute_command enforces its own timeout.
        super().__init__("terminal", timeout_seconds=None)

    def _register_tools(self) -> None:
        self.registry.register_function(
            ToolSpec(
                name="execute_command",
                description=(
                    "Execute a shell command and return its exit code and output. "
                    "Interactive commands are not supported."
                ),
                parameters={
                    "type": "object",
                    "properties": {
                        "command": {"type": "string", "minLength": 1, "description": 'Command to run. Example: "ls -la"'},
                        "cwd": {
                            "type": "string",
                            "description": 'Working directory, relative to the project root. Example: "src"',
                            "default": ".",
                        },
                        "timeout_seconds": {"type": "number", "exclusiveMinimum": 0},
                    },
                    "required": ["command"],
                },
                requires_confirmation=True,
            ),
            self._execute_command,
        )

    async def _execute_command(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        command = str(params["command"]).strip()
        cwd = (self.root / str(params.get("cwd") or ".")).resolve()
        if not cwd.is_dir():
            raise invalid_parameter(f"Working directory does not exist: {cwd}")
        timeout = float(params.get("timeout_seconds") or self.command_timeout_seconds)

        LOGGER.info("Running command in %s: %s", cwd, command)
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise ToolError(
                ErrorCode.TIMEOUT,
                f"Command timed out after {timeout:g}s: {command}",
                {"command": command},
            ) from exc
        except asyncio.CancelledError:
            process.kill()
            raise

        exit_code = process.returncode
        LOGGER.debug("Command exited with %s", exit_code)
        return {
            "command": command,
            "cwd": str(cwd),
            "exit_code": exit_code,
            "stdout": _tail(stdout.decode("utf-8", errors="replace"), _STDOUT_TAIL_CHARS),
            "stderr": _tail(stderr.decode("utf-8", errors="replace"), _STDERR_TAIL_CHARS),
        }


def _tail(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"...(truncated {len(text) - limit} chars)\n{text[-limit:]}"
