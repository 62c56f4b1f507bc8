"""Provider gateway: one uniform entry point to the reasoning backend.

The agent loop only talks to ProviderGateway. It sees two outcomes,
``Final`` or ``ToolRequested``, and two failure classes. Transient
failures are retried here with bounded exponential backoff; terminal
failures propagate on the first occurrence.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Callable

from loguru import logger

from errand.errors import ProviderError, TerminalProviderError, TransientProviderError
from errand.providers.base import LLMProvider, LLMResponse, ToolCallRequest


@dataclass(frozen=True)
class Final:
    """The backend produced a final answer."""

    content: str
    usage: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolRequested:
    """The backend asked for one or more tool calls."""

    tool_calls: list[ToolCallRequest]
    content: str | None = None  # Text the model emitted alongside the calls
    reasoning_content: str | None = None
    usage: dict[str, int] = field(default_factory=dict)


Outcome = Final | ToolRequested


class ProviderGateway:
    """
    Binds exactly one LLMProvider and adds the retry policy.

    Args:
        provider: The backend.
        model: Model to request (default: the provider's default model).
        max_attempts: Total attempts for transient failures (including the first).
        initial_delay: Delay before the first retry, in seconds.
        backoff_factor: Multiplier applied to the delay after each retry.
        max_delay: Upper bound for a single delay.
        jitter: Randomize delays (0.5x-1.5x) to avoid synchronized retries.
    """

    def __init__(
        self,
        provider: LLMProvider,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        backoff_factor: float = 2.0,
        max_delay: float = 30.0,
        jitter: bool = True,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.provider = provider
        self.model = model or provider.get_default_model()
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.backoff_factor = backoff_factor
        self.max_delay = max_delay
        self.jitter = jitter
        self._sleep = sleep

    def is_ready(self) -> bool:
        """Whether the backend is configured well enough to be invoked."""
        try:
            return bool(self.provider.is_configured())
        except Exception as e:
            logger.warning("Provider readiness check failed: {}", e)
            return False

    async def converse(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> Outcome:
        """
        Send the context to the backend.

        Returns:
            Final(content) or ToolRequested(tool_calls).

        Raises:
            TerminalProviderError: not ready, auth/config failure, or malformed response.
            TransientProviderError: still failing after ``max_attempts``.
        """
        if not self.is_ready():
            raise TerminalProviderError("Provider is not configured (missing API key or base URL)")

        response = await self._chat_with_retry(messages, tools)

        if response.finish_reason == "error":
            raise TerminalProviderError(response.content or "Provider returned an error")

        if response.has_tool_calls:
            return ToolRequested(
                tool_calls=list(response.tool_calls),
                content=response.content,
                reasoning_content=response.reasoning_content,
                usage=response.usage,
            )
        return Final(content=response.content or "", usage=response.usage)

    async def _chat_with_retry(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
    ) -> LLMResponse:
        delay = self.initial_delay
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self.provider.chat(
                    messages=messages,
                    tools=tools,
                    model=self.model,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                )
            except TransientProviderError as e:
                if attempt >= self.max_attempts:
                    logger.error("Provider failed after {} attempts: {}", attempt, e)
                    raise

                wait = e.retry_after if e.retry_after else delay
                wait = min(wait, self.max_delay)
                if self.jitter:
                    wait = wait * (0.5 + random.random())
                logger.warning(
                    "Provider attempt {}/{} failed: {}. Retrying in {:.1f}s",
                    attempt, self.max_attempts, e, wait,
                )
                await self._sleep(wait)
                delay = min(delay * self.backoff_factor, self.max_delay)
            except ProviderError:
                raise
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Unclassified backend bugs are not worth retrying
                raise TerminalProviderError(f"Unexpected provider failure: {e}") from e

        raise TerminalProviderError("Provider retry loop exited without a response")
