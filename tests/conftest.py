"""Shared fixtures: a scripted LLM backend and isolated data paths."""

from pathlib import Path
from typing import Any

import pytest

from errand.providers.base import LLMProvider, LLMResponse, ToolCallRequest
from errand.utils.helpers import set_data_path


class ScriptedProvider(LLMProvider):
    """LLM backend that replays a fixed list of responses (or exceptions).

    When the script runs out, the last entry repeats.
    """

    def __init__(self, script: list[LLMResponse | Exception] | None = None, configured: bool = True):
        super().__init__(api_key="test-key" if configured else None)
        self.script = list(script or [LLMResponse(content="ok")])
        self.calls: list[dict[str, Any]] = []

    async def chat(self, messages, tools=None, model=None, max_tokens=4096, temperature=0.7) -> LLMResponse:
        self.calls.append({
            "messages": [dict(m) for m in messages],
            "tools": tools,
            "model": model,
        })
        index = min(len(self.calls) - 1, len(self.script) - 1)
        item = self.script[index]
        if isinstance(item, Exception):
            raise item
        return item

    def get_default_model(self) -> str:
        return "scripted/test"


def tool_call(name: str, arguments: dict[str, Any], call_id: str = "call_1") -> LLMResponse:
    """A response asking for one tool call."""
    return LLMResponse(
        content=None,
        tool_calls=[ToolCallRequest(id=call_id, name=name, arguments=arguments)],
        finish_reason="tool_calls",
    )


@pytest.fixture(autouse=True)
def isolated_data_path(tmp_path: Path):
    """Point ~/.errand at a temp dir for every test."""
    set_data_path(tmp_path / "data")
    yield tmp_path / "data"
    set_data_path(None)
