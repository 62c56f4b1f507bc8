"""LiteLLM provider implementation for multi-provider support.

Maps every litellm failure onto the transient/terminal taxonomy so the
gateway can decide whether to retry. This provider never retries itself.
"""

import asyncio
import os
from typing import Any

import json_repair
import litellm
from litellm import acompletion
from loguru import logger

from errand.errors import TerminalProviderError, TransientProviderError
from errand.providers.base import LLMProvider, LLMResponse, ToolCallRequest

# Timeout for a single LLM call, generous but prevents infinite hangs
LLM_CALL_TIMEOUT: float = 45.0

_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    litellm.RateLimitError,
    litellm.Timeout,
    litellm.APIConnectionError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
)

_TERMINAL_ERRORS: tuple[type[BaseException], ...] = (
    litellm.AuthenticationError,
    litellm.PermissionDeniedError,
    litellm.BadRequestError,
    litellm.NotFoundError,
)

# Env var litellm reads for each model prefix
_ENV_KEYS: dict[str, str] = {
    "openrouter": "OPENROUTER_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "groq": "GROQ_API_KEY",
}

# Gateways that route any model; litellm expects their prefix on the model name
_GATEWAY_PREFIXES: dict[str, str] = {
    "openrouter": "openrouter",
    "vllm": "hosted_vllm",
}


class LiteLLMProvider(LLMProvider):
    """
    LLM provider using LiteLLM for multi-provider support.

    Supports OpenRouter, Anthropic, OpenAI, Gemini, DeepSeek and other
    providers through a unified interface.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "anthropic/claude-sonnet-4-5",
        extra_headers: dict[str, str] | None = None,
        provider_name: str | None = None,
        timeout: float = LLM_CALL_TIMEOUT,
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.provider_name = provider_name
        self.extra_headers = extra_headers or {}
        self._timeout = timeout

        if api_key:
            self._setup_env(api_key, default_model)

        # Disable LiteLLM logging noise
        litellm.suppress_debug_info = True
        # Drop unsupported parameters for providers
        litellm.drop_params = True

    def _env_key(self, model: str) -> str | None:
        # The configured provider wins over the model prefix
        if self.provider_name:
            return _ENV_KEYS.get(self.provider_name)
        prefix = model.split("/", 1)[0].lower() if "/" in model else ""
        return _ENV_KEYS.get(prefix)

    def _setup_env(self, api_key: str, model: str) -> None:
        """Export the key under the variable litellm expects for this model."""
        env_key = self._env_key(model)
        if env_key:
            os.environ.setdefault(env_key, api_key)

    def _resolve_model(self, model: str) -> str:
        """Prefix the model for gateway providers (openrouter/..., hosted_vllm/...)."""
        prefix = _GATEWAY_PREFIXES.get(self.provider_name or "")
        if prefix and not model.startswith(f"{prefix}/"):
            return f"{prefix}/{model}"
        return model

    def is_configured(self) -> bool:
        if self.api_key or self.api_base:
            return True
        env_key = self._env_key(self.default_model)
        return bool(env_key and os.environ.get(env_key))

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """
        Send a chat completion request via LiteLLM.

        Raises:
            TransientProviderError: timeout, connection error, rate limit, 5xx.
            TerminalProviderError: authentication, permission, bad request.
        """
        kwargs: dict[str, Any] = {
            "model": self._resolve_model(model or self.default_model),
            "messages": messages,
            "max_tokens": max(1, max_tokens),
            "temperature": temperature,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.extra_headers:
            kwargs["extra_headers"] = self.extra_headers
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        try:
            response = await asyncio.wait_for(acompletion(**kwargs), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            logger.warning("LLM timeout after {}s on {}", self._timeout, kwargs["model"])
            raise TransientProviderError(f"LLM call timed out after {self._timeout}s") from e
        except _TRANSIENT_ERRORS as e:
            raise TransientProviderError(str(e), retry_after=_retry_after(e)) from e
        except _TERMINAL_ERRORS as e:
            raise TerminalProviderError(str(e)) from e
        except Exception as e:
            status = getattr(e, "status_code", None)
            if isinstance(status, int) and (status == 429 or status >= 500):
                raise TransientProviderError(str(e)) from e
            raise TerminalProviderError(str(e)) from e

        return self._parse_response(response)

    def _parse_response(self, response: Any) -> LLMResponse:
        """Parse LiteLLM response into our standard format."""
        try:
            choice = response.choices[0]
        except (AttributeError, IndexError) as e:
            raise TerminalProviderError("Malformed provider response: no choices") from e
        message = choice.message

        tool_calls = []
        if getattr(message, "tool_calls", None):
            for tc in message.tool_calls:
                # Parse arguments from JSON string if needed
                args = tc.function.arguments
                if isinstance(args, str):
                    args = json_repair.loads(args) if args.strip() else {}
                if not isinstance(args, dict):
                    args = {}

                tool_calls.append(ToolCallRequest(
                    id=tc.id,
                    name=tc.function.name,
                    arguments=args,
                ))

        usage = {}
        if getattr(response, "usage", None):
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }

        return LLMResponse(
            content=message.content,
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "stop",
            usage=usage,
            reasoning_content=getattr(message, "reasoning_content", None),
        )

    def get_default_model(self) -> str:
        """Get the default model."""
        return self.default_model


def _retry_after(exc: BaseException) -> float | None:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None
