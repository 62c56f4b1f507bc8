"""Agent tools module."""

from errand.agent.tools.base import Tool, ToolContext, ToolErrorInfo, ToolResult, current_tool_context
from errand.agent.tools.registry import ToolRegistry
from errand.agent.tools.sandbox import Sandbox

__all__ = [
    "Tool",
    "ToolContext",
    "ToolErrorInfo",
    "ToolResult",
    "ToolRegistry",
    "Sandbox",
    "current_tool_context",
]
