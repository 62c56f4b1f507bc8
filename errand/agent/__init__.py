"""Agent core module."""

from errand.agent.context import ContextBuilder
from errand.agent.loop import AgentLoop, AgentState
from errand.agent.memory import KeywordRetriever, MemoryExcerpt, MemoryRetriever, MemoryStore

__all__ = [
    "AgentLoop",
    "AgentState",
    "ContextBuilder",
    "MemoryStore",
    "MemoryRetriever",
    "MemoryExcerpt",
    "KeywordRetriever",
]
