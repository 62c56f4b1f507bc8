"""LLM provider abstraction module."""

from errand.providers.base import LLMProvider, LLMResponse, ToolCallRequest
from errand.providers.gateway import Final, Outcome, ProviderGateway, ToolRequested

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "ToolCallRequest",
    "ProviderGateway",
    "Final",
    "ToolRequested",
    "Outcome",
]
