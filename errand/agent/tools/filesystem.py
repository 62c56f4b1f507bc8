"""File system tools: read, write, edit, list.

Every path goes through the Sandbox before any I/O happens.
"""

from typing import Any

from errand.agent.tools.base import Tool
from errand.agent.tools.sandbox import Sandbox
from errand.errors import ToolExecutionError

# Larger files are truncated when read back to the model
MAX_READ_CHARS = 200_000


class _FileTool(Tool):
    def __init__(self, sandbox: Sandbox):
        self._sandbox = sandbox


class ReadFileTool(_FileTool):
    """Tool to read file contents."""

    @property
    def name(self) -> str:
        return "read_file"

    @property
    def description(self) -> str:
        return "Read the contents of a file at the given path (relative to the workspace)."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The file path to read"},
            },
            "required": ["path"],
        }

    async def execute(self, path: str, **kwargs: Any) -> str:
        file_path = self._sandbox.resolve(path)
        if not file_path.exists():
            raise ToolExecutionError(f"File not found: {path}")
        if not file_path.is_file():
            raise ToolExecutionError(f"Not a file: {path}")

        try:
            content = file_path.read_text(encoding="utf-8", errors="replace")
        except PermissionError as e:
            raise ToolExecutionError(f"Permission denied: {path}") from e
        except OSError as e:
            raise ToolExecutionError(f"Error reading file: {e}") from e

        if len(content) > MAX_READ_CHARS:
            content = content[:MAX_READ_CHARS] + f"\n... (truncated, {len(content) - MAX_READ_CHARS} more chars)"
        return content


class WriteFileTool(_FileTool):
    """Tool to write content to a file."""

    @property
    def name(self) -> str:
        return "write_file"

    @property
    def description(self) -> str:
        return "Write content to a file at the given path. Creates parent directories if needed."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The file path to write to"},
                "content": {"type": "string", "description": "The content to write"},
            },
            "required": ["path", "content"],
        }

    async def execute(self, path: str, content: str, **kwargs: Any) -> str:
        file_path = self._sandbox.resolve(path)
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(content, encoding="utf-8")
        except PermissionError as e:
            raise ToolExecutionError(f"Permission denied: {path}") from e
        except OSError as e:
            raise ToolExecutionError(f"Error writing file: {e}") from e
        return f"Successfully wrote {len(content.encode('utf-8'))} bytes to {path}"


class EditFileTool(_FileTool):
    """Tool to edit a file by replacing text."""

    @property
    def name(self) -> str:
        return "edit_file"

    @property
    def description(self) -> str:
        return "Edit a file by replacing old_text with new_text. The old_text must exist exactly once in the file."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The file path to edit"},
                "old_text": {"type": "string", "description": "The exact text to find and replace", "minLength": 1},
                "new_text": {"type": "string", "description": "The text to replace with"},
            },
            "required": ["path", "old_text", "new_text"],
        }

    async def execute(self, path: str, old_text: str, new_text: str, **kwargs: Any) -> str:
        file_path = self._sandbox.resolve(path)
        if not file_path.is_file():
            raise ToolExecutionError(f"File not found: {path}")

        try:
            content = file_path.read_text(encoding="utf-8")
        except OSError as e:
            raise ToolExecutionError(f"Error reading file: {e}") from e

        count = content.count(old_text)
        if count == 0:
            raise ToolExecutionError("old_text not found in file. Make sure it matches exactly.")
        if count > 1:
            raise ToolExecutionError(
                f"old_text appears {count} times. Please provide more context to make it unique."
            )

        try:
            file_path.write_text(content.replace(old_text, new_text, 1), encoding="utf-8")
        except OSError as e:
            raise ToolExecutionError(f"Error writing file: {e}") from e
        return f"Successfully edited {path}"


class ListDirTool(_FileTool):
    """Tool to list directory contents."""

    @property
    def name(self) -> str:
        return "list_dir"

    @property
    def description(self) -> str:
        return "List the contents of a directory."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The directory path to list (default: workspace root)"},
            },
        }

    async def execute(self, path: str = ".", **kwargs: Any) -> str:
        dir_path = self._sandbox.resolve(path)
        if not dir_path.exists():
            raise ToolExecutionError(f"Directory not found: {path}")
        if not dir_path.is_dir():
            raise ToolExecutionError(f"Not a directory: {path}")

        try:
            items = [
                f"{'[DIR]' if item.is_dir() else '[FILE]'} {item.name}"
                for item in sorted(dir_path.iterdir())
            ]
        except OSError as e:
            raise ToolExecutionError(f"Error listing directory: {e}") from e

        if not items:
            return f"Directory {path} is empty"
        return "\n".join(items)
