"""Tests for AgentLoop — request lifecycle, tool rounds, limits, errors, concurrency."""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import pytest

from errand.agent.loop import TRUNCATION_NOTICE, AgentLoop, AgentState
from errand.agent.tools.base import Tool
from errand.agent.tools.registry import ToolRegistry
from errand.bus.events import InboundMessage, MessageKind
from errand.bus.queue import MessageBus
from errand.errors import StoreIOFailure, TerminalProviderError, TransientProviderError
from errand.providers.base import LLMResponse
from errand.providers.gateway import ProviderGateway
from errand.session.manager import SessionManager

from tests.conftest import ScriptedProvider, tool_call


def make_agent(tmp_path: Path, provider, bus: MessageBus | None = None, **kwargs) -> AgentLoop:
    workspace = tmp_path / "ws"
    workspace.mkdir(exist_ok=True)
    gateway = ProviderGateway(provider, max_attempts=kwargs.pop("max_attempts", 1), jitter=False)
    return AgentLoop(
        bus=bus or MessageBus(),
        gateway=gateway,
        workspace=workspace,
        sessions=SessionManager(tmp_path / "sessions"),
        **kwargs,
    )


@asynccontextmanager
async def running(agent: AgentLoop):
    task = asyncio.create_task(agent.run())
    try:
        yield agent
    finally:
        agent.stop()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


# ── Request lifecycle ──────────────────────────────────────


@pytest.mark.asyncio
async def test_plain_answer(tmp_path: Path):
    provider = ScriptedProvider([LLMResponse(content="4")])
    agent = make_agent(tmp_path, provider)

    async with running(agent):
        reply = await agent.submit("api:alice", "What is 2+2?", timeout=5)

    assert reply == "4"
    snap = await agent.sessions.read("api:alice")
    assert snap.roles == ["user", "assistant"]
    assert [t.content for t in snap.turns] == ["What is 2+2?", "4"]

    outbound = await agent.bus.consume_outbound()
    assert (outbound.channel, outbound.chat_id, outbound.content) == ("api", "alice", "4")
    assert agent.state_of("api:alice") is AgentState.AWAITING_INPUT


@pytest.mark.asyncio
async def test_context_carries_system_prompt_and_user_turn(tmp_path: Path):
    provider = ScriptedProvider([LLMResponse(content="ok")])
    agent = make_agent(tmp_path, provider)

    await agent.process_direct("hello there", session_id="cli:me", channel="cli", chat_id="me")

    messages = provider.calls[0]["messages"]
    assert messages[0]["role"] == "system"
    assert messages[-1] == {"role": "user", "content": "hello there"}
    tool_names = {t["function"]["name"] for t in provider.calls[0]["tools"]}
    assert {"read_file", "write_file", "edit_file", "list_dir", "exec", "web_search", "web_fetch", "message"} <= tool_names


@pytest.mark.asyncio
async def test_tool_round_then_answer(tmp_path: Path):
    provider = ScriptedProvider([
        tool_call("exec", {"cmd": "echo hi"}, call_id="call_1"),
        LLMResponse(content="The command printed hi."),
    ])
    agent = make_agent(tmp_path, provider)

    async with running(agent):
        reply = await agent.submit("api:bob", "Run echo hi", timeout=10)

    assert reply == "The command printed hi."
    snap = await agent.sessions.read("api:bob")
    assert snap.roles == ["user", "assistant", "tool", "assistant"]
    assistant_call, tool_turn = snap.turns[1], snap.turns[2]
    assert assistant_call.tool_calls[0]["id"] == "call_1"
    assert tool_turn.tool_call_id == "call_1"
    assert tool_turn.content == "hi"
    assert tool_turn.error is None

    second_call = provider.calls[1]["messages"]
    assert second_call[-1] == {"role": "tool", "tool_call_id": "call_1", "name": "exec", "content": "hi"}


@pytest.mark.asyncio
async def test_tool_failure_is_fed_back_not_fatal(tmp_path: Path):
    provider = ScriptedProvider([
        tool_call("read_file", {"path": "../../etc/passwd"}),
        LLMResponse(content="I can't read that file."),
    ])
    agent = make_agent(tmp_path, provider)

    reply = await agent.process_direct("show /etc/passwd")

    assert reply == "I can't read that file."
    tool_turn = (await agent.sessions.read("cli:direct")).turns[2]
    assert tool_turn.error["kind"] == "SandboxViolation"
    assert provider.calls[1]["messages"][-1]["content"].startswith("Error [SandboxViolation]")


@pytest.mark.asyncio
async def test_iteration_cap(tmp_path: Path):
    provider = ScriptedProvider([tool_call("list_dir", {})])
    agent = make_agent(tmp_path, provider, max_iterations=5)

    reply = await agent.process_direct("loop forever")

    assert len(provider.calls) == 5
    assert reply == TRUNCATION_NOTICE.format(n=5)
    snap = await agent.sessions.read("cli:direct")
    assert len(snap) == 1 + 5 * 2 + 1
    assert snap.turns[-1].content == reply


@pytest.mark.asyncio
async def test_history_window_is_bounded(tmp_path: Path):
    provider = ScriptedProvider([LLMResponse(content="ok")])
    agent = make_agent(tmp_path, provider, memory_window=4)

    for i in range(5):
        await agent.process_direct(f"message {i}")

    last = provider.calls[-1]["messages"]
    assert len(last) == 1 + 4
    assert last[-1]["content"] == "message 4"


# ── Errors ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_terminal_provider_error_gives_one_error_reply(tmp_path: Path):
    provider = ScriptedProvider([TerminalProviderError("invalid api key")])
    agent = make_agent(tmp_path, provider)

    async with running(agent):
        reply = await agent.submit("api:carol", "hello", timeout=5)

    assert "TerminalProviderError" in reply
    outbound = await agent.bus.consume_outbound()
    assert outbound.is_error
    assert agent.bus.outbound_size == 0
    # The user turn written before the failure is kept
    assert (await agent.sessions.read("api:carol")).roles == ["user"]


@pytest.mark.asyncio
async def test_transient_error_is_retried_by_gateway(tmp_path: Path):
    provider = ScriptedProvider([TransientProviderError("503"), LLMResponse(content="back")])
    agent = make_agent(tmp_path, provider, max_attempts=3)
    agent.gateway._sleep = _no_sleep

    assert await agent.process_direct("hi") == "back"
    assert len(provider.calls) == 2


async def _no_sleep(delay: float) -> None:
    return None


@pytest.mark.asyncio
async def test_unconfigured_provider_fails_without_call(tmp_path: Path):
    provider = ScriptedProvider(configured=False)
    agent = make_agent(tmp_path, provider)

    reply = await agent.process_direct("hi")

    assert "not configured" in reply
    assert provider.calls == []


class BlockingTool(Tool):
    name = "wait_forever"
    description = "Blocks until cancelled."
    parameters = {"type": "object", "properties": {}}

    def __init__(self):
        self.started = asyncio.Event()

    async def execute(self, **kwargs: Any) -> str:
        self.started.set()
        await asyncio.Event().wait()
        return "unreachable"


@pytest.mark.asyncio
async def test_cancelled_tool_round_leaves_no_partial_turns(tmp_path: Path):
    tool = BlockingTool()
    tools = ToolRegistry(timeout=30)
    tools.register(tool)
    provider = ScriptedProvider([tool_call("wait_forever", {})])
    agent = make_agent(tmp_path, provider, tools=tools)

    task = asyncio.create_task(agent.process_direct("start the long job"))
    await asyncio.wait_for(tool.started.wait(), timeout=5)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    snap = await agent.sessions.read("cli:direct")
    assert snap.roles == ["user"]
    assert not agent.sessions.is_locked("cli:direct")
    assert agent.state_of("cli:direct") is AgentState.AWAITING_INPUT

    reloaded = SessionManager(tmp_path / "sessions")
    assert (await reloaded.read("cli:direct")).roles == ["user"]


@pytest.mark.asyncio
async def test_store_failure_during_tool_round_gives_one_error_reply(tmp_path: Path, monkeypatch):
    provider = ScriptedProvider([
        LLMResponse(content="first answer"),
        tool_call("list_dir", {}),
        LLMResponse(content="never reached"),
    ])
    agent = make_agent(tmp_path, provider)

    async with running(agent):
        assert await agent.submit("api:gina", "hello", timeout=5) == "first answer"
        await agent.bus.consume_outbound()

        real_persist = agent.sessions._persist
        writes: list[int] = []

        def failing_on_tool_round(session):
            writes.append(len(session.turns))
            if len(writes) == 2:
                raise StoreIOFailure("disk full")
            real_persist(session)

        monkeypatch.setattr(agent.sessions, "_persist", failing_on_tool_round)
        reply = await agent.submit("api:gina", "list my files", timeout=5)

    assert "StoreIOFailure" in reply
    outbound = await agent.bus.consume_outbound()
    assert outbound.is_error
    assert agent.bus.outbound_size == 0
    assert len(provider.calls) == 2

    expected = ["hello", "first answer", "list my files"]
    assert [t.content for t in (await agent.sessions.read("api:gina")).turns] == expected
    reloaded = SessionManager(tmp_path / "sessions")
    assert [t.content for t in (await reloaded.read("api:gina")).turns] == expected
    assert not agent.sessions.is_locked("api:gina")


def test_max_iterations_must_be_positive(tmp_path: Path):
    with pytest.raises(ValueError):
        make_agent(tmp_path, ScriptedProvider(), max_iterations=0)


# ── Commands ───────────────────────────────────────────────


@pytest.mark.asyncio
async def test_new_command_clears_history(tmp_path: Path):
    provider = ScriptedProvider([LLMResponse(content="ok")])
    agent = make_agent(tmp_path, provider)

    await agent.process_direct("remember this")
    assert await agent.process_direct("/new") == "New session started."
    assert len(await agent.sessions.read("cli:direct")) == 0

    assert "/help" in await agent.process_direct("/help")
    assert len(provider.calls) == 1


# ── Concurrency ────────────────────────────────────────────


class SlowProvider(ScriptedProvider):
    def __init__(self):
        super().__init__([LLMResponse(content="done")])
        self.active = 0
        self.peak = 0
        self.order: list[str] = []

    async def chat(self, messages, tools=None, model=None, max_tokens=4096, temperature=0.7):
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.order.append(messages[-1]["content"])
        try:
            await asyncio.sleep(0.05)
        finally:
            self.active -= 1
        return await super().chat(messages, tools, model, max_tokens, temperature)


@pytest.mark.asyncio
async def test_same_session_requests_are_serialized_in_order(tmp_path: Path):
    provider = SlowProvider()
    agent = make_agent(tmp_path, provider)

    async with running(agent):
        replies = await asyncio.gather(
            agent.submit("api:dave", "first", timeout=5),
            agent.submit("api:dave", "second", timeout=5),
            agent.submit("api:dave", "third", timeout=5),
        )

    assert replies == ["done", "done", "done"]
    assert provider.peak == 1
    assert provider.order == ["first", "second", "third"]
    snap = await agent.sessions.read("api:dave")
    assert snap.roles == ["user", "assistant"] * 3
    assert [t.sequence for t in snap.turns] == list(range(1, 7))


@pytest.mark.asyncio
async def test_different_sessions_run_in_parallel(tmp_path: Path):
    provider = SlowProvider()
    agent = make_agent(tmp_path, provider)

    async with running(agent):
        await asyncio.gather(
            agent.submit("api:erin", "a", timeout=5),
            agent.submit("api:frank", "b", timeout=5),
        )

    assert provider.peak == 2


@pytest.mark.asyncio
async def test_message_tool_targets_the_requesting_chat(tmp_path: Path):
    provider = ScriptedProvider([
        tool_call("message", {"content": "working on it"}),
        LLMResponse(content="finished"),
    ])
    agent = make_agent(tmp_path, provider)

    async with running(agent):
        await agent.submit("telegram:42", "do the thing", timeout=5)

    first = await agent.bus.consume_outbound()
    second = await agent.bus.consume_outbound()
    assert (first.channel, first.chat_id, first.content) == ("telegram", "42", "working on it")
    assert second.content == "finished"


# ── Scheduled triggers ─────────────────────────────────────


@pytest.mark.asyncio
async def test_scheduled_trigger_is_delivered_and_reported(tmp_path: Path):
    outcomes: list[tuple[str, str | None]] = []
    provider = ScriptedProvider([LLMResponse(content="Stand-up in 5 minutes!")])
    bus = MessageBus()
    agent = make_agent(tmp_path, provider, bus=bus, on_scheduled_result=lambda job, err: outcomes.append((job, err)))

    trigger = InboundMessage(
        channel="cron",
        sender_id="cron",
        chat_id="job1",
        content="remind about stand-up",
        kind=MessageKind.SCHEDULED_TRIGGER,
        session_id="telegram:42",
        metadata={"job_id": "job1", "deliver": True, "deliver_channel": "telegram", "deliver_to": "42"},
    )
    async with running(agent):
        await bus.publish(trigger)
        delivered = await asyncio.wait_for(bus.consume_outbound(), timeout=5)

    assert (delivered.channel, delivered.chat_id) == ("telegram", "42")
    assert delivered.content == "Stand-up in 5 minutes!"
    assert outcomes == [("job1", None)]


@pytest.mark.asyncio
async def test_scheduled_failure_is_reported_to_scheduler(tmp_path: Path):
    outcomes: list[tuple[str, str | None]] = []
    provider = ScriptedProvider([TerminalProviderError("quota exceeded")])
    agent = make_agent(tmp_path, provider, on_scheduled_result=lambda job, err: outcomes.append((job, err)))

    msg = InboundMessage(
        channel="cron", sender_id="cron", chat_id="j2", content="x",
        kind=MessageKind.SCHEDULED_TRIGGER, metadata={"job_id": "j2"},
    )
    await agent._handle(msg)

    assert outcomes[0][0] == "j2"
    assert "quota exceeded" in outcomes[0][1]
    # No delivery target: nothing is published
    assert agent.bus.outbound_size == 0
