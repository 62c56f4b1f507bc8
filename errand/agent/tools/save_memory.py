"""Save memory tool — writes durable notes to MEMORY.md."""

from typing import Any

from errand.agent.memory import MemoryStore
from errand.agent.tools.base import Tool
from errand.errors import ToolExecutionError


class SaveMemoryTool(Tool):
    """Tool for the agent to keep facts across sessions.

    Entries are appended to memory/MEMORY.md, where the memory retriever
    can surface them in later conversations.
    """

    def __init__(self, memory: MemoryStore):
        self._memory = memory

    @property
    def name(self) -> str:
        return "save_memory"

    @property
    def description(self) -> str:
        return (
            "Save something important to long-term memory. "
            "Use this for facts, preferences and decisions that should be "
            "remembered in future conversations."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "memory": {
                    "type": "string",
                    "description": "The fact to remember, written as a self-contained note.",
                    "minLength": 1,
                },
            },
            "required": ["memory"],
        }

    async def execute(self, memory: str, **kwargs: Any) -> str:
        try:
            self._memory.append_long_term(memory)
        except OSError as e:
            raise ToolExecutionError(f"Error saving memory: {e}") from e
        return f"Saved to long-term memory: {memory[:100]}"
