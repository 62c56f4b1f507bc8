"""Tests for ProviderGateway — outcomes, retry policy, error classes."""

import pytest

from errand.errors import TerminalProviderError, TransientProviderError
from errand.providers.base import LLMResponse
from errand.providers.gateway import Final, ProviderGateway, ToolRequested

from tests.conftest import ScriptedProvider, tool_call


class FakeSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _gateway(provider, **kwargs) -> tuple[ProviderGateway, FakeSleep]:
    sleep = FakeSleep()
    gw = ProviderGateway(provider, jitter=False, sleep=sleep, **kwargs)
    return gw, sleep


# ── Outcomes ───────────────────────────────────────────────


@pytest.mark.asyncio
async def test_plain_answer_is_final():
    gw, _ = _gateway(ScriptedProvider([LLMResponse(content="4")]))
    outcome = await gw.converse([{"role": "user", "content": "2+2?"}])
    assert outcome == Final(content="4")


@pytest.mark.asyncio
async def test_tool_calls_become_tool_requested():
    gw, _ = _gateway(ScriptedProvider([tool_call("exec", {"cmd": "echo hi"})]))
    outcome = await gw.converse([{"role": "user", "content": "run"}], tools=[{"type": "function"}])

    assert isinstance(outcome, ToolRequested)
    assert outcome.tool_calls[0].name == "exec"
    assert outcome.tool_calls[0].arguments == {"cmd": "echo hi"}


@pytest.mark.asyncio
async def test_model_defaults_to_provider_default():
    provider = ScriptedProvider()
    gw, _ = _gateway(provider)
    await gw.converse([{"role": "user", "content": "x"}])
    assert provider.calls[0]["model"] == "scripted/test"


@pytest.mark.asyncio
async def test_error_finish_reason_is_terminal():
    gw, _ = _gateway(ScriptedProvider([LLMResponse(content="bad request", finish_reason="error")]))
    with pytest.raises(TerminalProviderError, match="bad request"):
        await gw.converse([{"role": "user", "content": "x"}])


# ── Readiness ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_unconfigured_provider_is_not_invoked():
    provider = ScriptedProvider(configured=False)
    gw, _ = _gateway(provider)

    assert gw.is_ready() is False
    with pytest.raises(TerminalProviderError):
        await gw.converse([{"role": "user", "content": "x"}])
    assert provider.calls == []


# ── Retry policy ───────────────────────────────────────────


@pytest.mark.asyncio
async def test_transient_failures_are_retried_with_backoff():
    provider = ScriptedProvider([
        TransientProviderError("503"),
        TransientProviderError("503"),
        LLMResponse(content="recovered"),
    ])
    gw, sleep = _gateway(provider, max_attempts=3, initial_delay=1.0, backoff_factor=2.0)

    outcome = await gw.converse([{"role": "user", "content": "x"}])

    assert outcome.content == "recovered"
    assert len(provider.calls) == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_transient_failure_surfaces_after_max_attempts():
    provider = ScriptedProvider([TransientProviderError("timeout")])
    gw, sleep = _gateway(provider, max_attempts=3)

    with pytest.raises(TransientProviderError):
        await gw.converse([{"role": "user", "content": "x"}])
    assert len(provider.calls) == 3
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_terminal_failure_is_not_retried():
    provider = ScriptedProvider([TerminalProviderError("invalid api key")])
    gw, sleep = _gateway(provider, max_attempts=5)

    with pytest.raises(TerminalProviderError):
        await gw.converse([{"role": "user", "content": "x"}])
    assert len(provider.calls) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_retry_after_hint_is_honored_up_to_max_delay():
    provider = ScriptedProvider([
        TransientProviderError("429", retry_after=7.0),
        TransientProviderError("429", retry_after=500.0),
        LLMResponse(content="ok"),
    ])
    gw, sleep = _gateway(provider, max_attempts=3, max_delay=30.0)

    await gw.converse([{"role": "user", "content": "x"}])
    assert sleep.delays == [7.0, 30.0]


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_terminal():
    provider = ScriptedProvider([KeyError("choices")])
    gw, _ = _gateway(provider)

    with pytest.raises(TerminalProviderError, match="Unexpected provider failure"):
        await gw.converse([{"role": "user", "content": "x"}])
    assert len(provider.calls) == 1


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        ProviderGateway(ScriptedProvider(), max_attempts=0)
