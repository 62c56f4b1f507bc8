"""Shell execution tool."""

import asyncio
from typing import Any

from loguru import logger

from errand.agent.tools.base import Tool
from errand.agent.tools.sandbox import Sandbox
from errand.errors import ToolExecutionError, ToolTimeoutError

MAX_OUTPUT_CHARS = 10000


class ExecTool(Tool):
    """Tool to execute shell commands inside the workspace."""

    def __init__(
        self,
        sandbox: Sandbox,
        timeout: float = 60.0,
        working_dir: str | None = None,
        restrict_to_workspace: bool = True,
    ):
        self._sandbox = sandbox
        self.timeout = timeout
        self.working_dir = working_dir
        self.restrict_to_workspace = restrict_to_workspace

    @property
    def name(self) -> str:
        return "exec"

    @property
    def description(self) -> str:
        return "Execute a shell command and return its output. Use with caution."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "cmd": {"type": "string", "description": "The shell command to execute", "minLength": 1},
                "working_dir": {
                    "type": "string",
                    "description": "Optional working directory (inside the workspace)",
                },
            },
            "required": ["cmd"],
        }

    async def execute(self, cmd: str, working_dir: str | None = None, **kwargs: Any) -> str:
        cwd = self._sandbox.resolve(working_dir or self.working_dir or ".")
        if self.restrict_to_workspace:
            self._sandbox.check_command(cmd, cwd)
        if not cwd.is_dir():
            raise ToolExecutionError(f"Working directory does not exist: {working_dir}")

        logger.debug("exec: {} (cwd={})", cmd, cwd)
        try:
            process = await asyncio.create_subprocess_shell(
                cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
            )
        except OSError as e:
            raise ToolExecutionError(f"Failed to start command: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            raise ToolTimeoutError(f"Command timed out after {self.timeout} seconds")
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        parts = []
        if stdout:
            parts.append(stdout.decode("utf-8", errors="replace"))
        if stderr:
            text = stderr.decode("utf-8", errors="replace")
            if text.strip():
                parts.append(f"STDERR:\n{text}")
        if process.returncode != 0:
            parts.append(f"Exit code: {process.returncode}")

        result = "\n".join(parts).strip() if parts else ""
        if not result:
            return "(no output)"

        if len(result) > MAX_OUTPUT_CHARS:
            result = result[:MAX_OUTPUT_CHARS] + f"\n... (truncated, {len(result) - MAX_OUTPUT_CHARS} more chars)"
        return result

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
