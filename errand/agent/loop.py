"""Agent loop: the core processing engine."""

import asyncio
import json
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from errand.agent.context import ContextBuilder
from errand.agent.memory import MemoryRetriever, MemoryStore
from errand.agent.tools.base import ToolContext, current_tool_context
from errand.agent.tools.cron import CronTool
from errand.agent.tools.filesystem import EditFileTool, ListDirTool, ReadFileTool, WriteFileTool
from errand.agent.tools.message import MessageTool
from errand.agent.tools.registry import ToolRegistry
from errand.agent.tools.sandbox import Sandbox
from errand.agent.tools.save_memory import SaveMemoryTool
from errand.agent.tools.shell import ExecTool
from errand.agent.tools.web import WebFetchTool, WebSearchTool
from errand.bus.events import InboundMessage, MessageKind, OutboundMessage
from errand.bus.queue import MessageBus
from errand.cron.service import CronService
from errand.errors import ProviderError, StoreError
from errand.providers.base import ToolCallRequest
from errand.providers.gateway import Final, ProviderGateway
from errand.session.manager import SessionManager, Turn
from errand.utils.helpers import get_sessions_path

HELP_TEXT = """◆ errand commands:
/new - Start a new conversation
/help - Show available commands"""

TRUNCATION_NOTICE = (
    "I stopped after {n} rounds of tool calls without reaching a final answer. "
    "Let me know if I should continue."
)


class AgentState(str, Enum):
    """Where a session is in the request cycle."""

    AWAITING_INPUT = "awaiting_input"
    BUILDING_CONTEXT = "building_context"
    AWAITING_PROVIDER = "awaiting_provider"
    EXECUTING_TOOLS = "executing_tools"
    RESPONDING = "responding"


class AgentLoop:
    """
    The agent loop is the core processing engine.

    It:
    1. Receives messages from the bus, one worker per session
    2. Builds context with history and memory
    3. Calls the provider gateway
    4. Executes tool calls
    5. Sends responses back

    A session is processed by at most one request at a time (its session
    lock is held for the whole request). Different sessions run in parallel.
    """

    def __init__(
        self,
        bus: MessageBus,
        gateway: ProviderGateway,
        workspace: Path,
        sessions: SessionManager | None = None,
        tools: ToolRegistry | None = None,
        max_iterations: int = 5,
        memory_window: int = 50,
        tool_timeout: float = 60.0,
        max_parallel_tools: int = 1,
        retriever: MemoryRetriever | None = None,
        brave_api_key: str | None = None,
        web_max_results: int = 5,
        web_fetch_max_chars: int = 50000,
        exec_timeout: float = 60.0,
        restrict_to_workspace: bool = True,
        cron_service: CronService | None = None,
        on_scheduled_result: Callable[[str, str | None], None] | None = None,
        on_heartbeat_result: Callable[[str | None], object] | None = None,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self.bus = bus
        self.gateway = gateway
        self.workspace = Path(workspace)
        self.max_iterations = max_iterations
        self.memory_window = memory_window
        self.max_parallel_tools = max_parallel_tools
        self.brave_api_key = brave_api_key
        self.web_max_results = web_max_results
        self.web_fetch_max_chars = web_fetch_max_chars
        self.exec_timeout = exec_timeout
        self.restrict_to_workspace = restrict_to_workspace
        self.cron_service = cron_service
        self.on_scheduled_result = on_scheduled_result
        self.on_heartbeat_result = on_heartbeat_result

        self.memory = MemoryStore(self.workspace)
        self.context = ContextBuilder(self.workspace, retriever=retriever)
        self.sessions = sessions or SessionManager(get_sessions_path())
        self.sandbox = Sandbox(self.workspace)
        if tools is None:
            tools = ToolRegistry(timeout=tool_timeout, max_parallel=max_parallel_tools)
            self._register_default_tools(tools)
        tools.freeze()
        self.tools = tools

        self._running = False
        self._workers: dict[str, asyncio.Task] = {}
        self._waiters: dict[str, asyncio.Future[OutboundMessage]] = {}
        self._states: dict[str, AgentState] = {}

    def _register_default_tools(self, tools: ToolRegistry) -> None:
        """Register the default set of tools."""
        tools.register(ReadFileTool(self.sandbox))
        tools.register(WriteFileTool(self.sandbox))
        tools.register(EditFileTool(self.sandbox))
        tools.register(ListDirTool(self.sandbox))
        tools.register(ExecTool(
            self.sandbox,
            timeout=self.exec_timeout,
            restrict_to_workspace=self.restrict_to_workspace,
        ))
        tools.register(WebSearchTool(api_key=self.brave_api_key, max_results=self.web_max_results))
        tools.register(WebFetchTool(max_chars=self.web_fetch_max_chars))
        tools.register(MessageTool(send_callback=self.bus.publish_outbound))
        tools.register(SaveMemoryTool(self.memory))
        if self.cron_service:
            tools.register(CronTool(self.cron_service))

    # ── State ─────────────────────────────────────────────────

    def state_of(self, session_id: str) -> AgentState:
        """Current state of a session (AWAITING_INPUT when idle)."""
        return self._states.get(session_id, AgentState.AWAITING_INPUT)

    def _set_state(self, session_id: str, state: AgentState) -> None:
        if state is AgentState.AWAITING_INPUT:
            self._states.pop(session_id, None)
        else:
            self._states[session_id] = state
        logger.trace("Session {} -> {}", session_id, state.value)

    # ── Bus side ──────────────────────────────────────────────

    async def run(self) -> None:
        """Run the agent loop, starting a worker for every session with pending messages."""
        self._running = True
        logger.info("Agent loop started")

        while self._running:
            session_id = await self.bus.next_ready(timeout=1.0)
            if session_id is None:
                continue
            worker = self._workers.get(session_id)
            if worker is None or worker.done():
                self._workers[session_id] = asyncio.create_task(self._drain(session_id))

    def stop(self) -> None:
        """Stop the agent loop and cancel in-flight requests."""
        self._running = False
        for task in self._workers.values():
            task.cancel()
        self._workers.clear()
        for fut in self._waiters.values():
            if not fut.done():
                fut.cancel()
        logger.info("Agent loop stopping")

    async def _drain(self, session_id: str) -> None:
        """Process one session's queue in order until it is empty."""
        while (msg := self.bus.try_consume(session_id)) is not None:
            await self._handle(msg)
        # No await between the empty check and here, so a new arrival always sees no worker
        self._workers.pop(session_id, None)

    async def _handle(self, msg: InboundMessage) -> None:
        try:
            response = await self.process_message(msg)
        except asyncio.CancelledError:
            self._resolve(msg, None)
            raise
        except Exception as e:
            logger.exception("Error processing message for {}", msg.session_id)
            response = self._reply(msg, f"Sorry, I encountered an error: {e}", is_error=True)
        await self._respond(msg, response)

    async def _respond(self, msg: InboundMessage, response: OutboundMessage | None) -> None:
        """Publish a reply to where the request came from and wake any submit() waiter."""
        if response is not None:
            if msg.kind is MessageKind.SCHEDULED_TRIGGER:
                await self._deliver_scheduled(msg, response)
            else:
                await self.bus.publish_outbound(response)
        self._resolve(msg, response)

    async def _deliver_scheduled(self, msg: InboundMessage, response: OutboundMessage) -> None:
        meta = msg.metadata or {}
        job_id = meta.get("job_id")
        if job_id and self.on_scheduled_result:
            self.on_scheduled_result(job_id, response.content if response.is_error else None)
        if meta.get("heartbeat"):
            if response.is_error:
                logger.warning("Heartbeat request failed: {}", response.content)
            elif self.on_heartbeat_result:
                self.on_heartbeat_result(response.content)

        channel, to = meta.get("deliver_channel"), meta.get("deliver_to")
        if meta.get("deliver") and channel and to:
            await self.bus.publish_outbound(OutboundMessage(
                channel=channel,
                chat_id=to,
                content=response.content,
                session_id=msg.session_id,
                request_id=msg.request_id,
                is_error=response.is_error,
            ))
        else:
            logger.debug("Scheduled reply for {} not delivered", msg.session_id)

    def _resolve(self, msg: InboundMessage, response: OutboundMessage | None) -> None:
        fut = self._waiters.pop(msg.request_id, None)
        if fut is None or fut.done():
            return
        if response is None:
            fut.cancel()
        else:
            fut.set_result(response)

    async def submit(self, session_id: str, text: str, timeout: float | None = None) -> str:
        """
        Publish a user request and wait for its reply.

        The loop must be running. Raises BusOverflow when the session queue
        is full and asyncio.TimeoutError when no reply arrives in time.
        """
        channel, _, chat_id = session_id.partition(":")
        if not chat_id:
            channel, chat_id = "api", session_id
        msg = InboundMessage(
            channel=channel,
            sender_id="api",
            chat_id=chat_id,
            content=text,
            session_id=session_id,
        )
        fut: asyncio.Future[OutboundMessage] = asyncio.get_running_loop().create_future()
        self._waiters[msg.request_id] = fut
        try:
            await self.bus.publish(msg)
            reply = await asyncio.wait_for(fut, timeout=timeout)
        finally:
            self._waiters.pop(msg.request_id, None)
        return reply.content

    # ── Request processing ────────────────────────────────────

    async def process_message(self, msg: InboundMessage) -> OutboundMessage | None:
        """
        Process a single inbound message.

        Fatal errors (provider, store) end the request with one error reply;
        turns persisted before the failure are kept.

        Returns:
            The response message.
        """
        key = msg.session_id
        try:
            async with self.sessions.lock(key):
                token = current_tool_context.set(ToolContext(session_id=key, channel=msg.channel, chat_id=msg.chat_id))
                try:
                    return await self._process_locked(msg)
                finally:
                    current_tool_context.reset(token)
                    self._set_state(key, AgentState.AWAITING_INPUT)
        except (ProviderError, StoreError) as e:
            logger.error("Request {} in {} failed: [{}] {}", msg.request_id, key, e.kind, e.message)
            return self._reply(msg, f"Sorry, I couldn't complete that request ({e.kind}): {e.message}", is_error=True)

    async def _process_locked(self, msg: InboundMessage) -> OutboundMessage:
        key = msg.session_id
        self._set_state(key, AgentState.BUILDING_CONTEXT)

        cmd = msg.content.strip().lower()
        if cmd == "/new":
            await self.sessions.clear(key)
            return self._reply(msg, "New session started.")
        if cmd == "/help":
            return self._reply(msg, HELP_TEXT)

        preview = msg.content[:80] + "..." if len(msg.content) > 80 else msg.content
        logger.info("Processing {} from {}:{}: {}", msg.kind.value, msg.channel, msg.sender_id, preview)

        await self.sessions.append(key, Turn.user(msg.content))
        session = self.sessions.get_or_create(key)
        messages = self.context.build_messages(
            history=session.get_history(self.memory_window),
            current_message=msg.content,
            session_id=key,
            media=msg.media or None,
            channel=msg.channel,
            chat_id=msg.chat_id,
        )

        final_content = await self._run_agent_loop(key, messages)

        self._set_state(key, AgentState.RESPONDING)
        preview = final_content[:120] + "..." if len(final_content) > 120 else final_content
        logger.info("Response to {}:{}: {}", msg.channel, msg.sender_id, preview)
        return self._reply(msg, final_content)

    async def _run_agent_loop(self, key: str, messages: list[dict[str, Any]]) -> str:
        """
        Run the provider/tool iteration loop.

        Each round's assistant tool-call turn and its tool-result turns are
        appended together, so an interrupted round leaves no trace.

        Returns:
            The final content (or the truncation notice).
        """
        tool_defs = self.tools.get_definitions() or None
        iteration = 0

        while iteration < self.max_iterations:
            self._set_state(key, AgentState.AWAITING_PROVIDER)
            outcome = await self.gateway.converse(messages, tools=tool_defs)

            if isinstance(outcome, Final):
                content = outcome.content or "I've completed processing but have no response to give."
                await self.sessions.append(key, Turn.assistant(content))
                return content

            iteration += 1
            self._set_state(key, AgentState.EXECUTING_TOOLS)
            calls = outcome.tool_calls
            logger.info("Session {} round {}: {}", key, iteration, ", ".join(c.name for c in calls))

            results = await self.tools.dispatch_all(calls, self.max_parallel_tools)
            call_dicts = [self._call_dict(c) for c in calls]
            await self.sessions.append(key, [Turn.assistant(outcome.content, call_dicts)] + [
                Turn.tool(r.call_id, r.name, r.text, error=r.error.to_dict() if r.error else None)
                for r in results
            ])

            self.context.add_assistant_message(messages, outcome.content, call_dicts, outcome.reasoning_content)
            for result in results:
                self.context.add_tool_result(messages, result.call_id, result.name, result.text)

        logger.warning("Session {} hit the iteration cap ({})", key, self.max_iterations)
        notice = TRUNCATION_NOTICE.format(n=self.max_iterations)
        await self.sessions.append(key, Turn.assistant(notice))
        return notice

    @staticmethod
    def _call_dict(call: ToolCallRequest) -> dict[str, Any]:
        return {
            "id": call.id,
            "type": "function",
            "function": {"name": call.name, "arguments": json.dumps(call.arguments, ensure_ascii=False)},
        }

    @staticmethod
    def _reply(msg: InboundMessage, content: str, is_error: bool = False) -> OutboundMessage:
        return OutboundMessage(
            channel=msg.channel,
            chat_id=msg.chat_id,
            content=content,
            session_id=msg.session_id,
            request_id=msg.request_id,
            is_error=is_error,
            metadata=dict(msg.metadata or {}),
        )

    async def process_direct(
        self,
        content: str,
        session_id: str = "cli:direct",
        channel: str = "cli",
        chat_id: str = "direct",
    ) -> str:
        """
        Process a message directly, without the bus (CLI, heartbeat).

        Args:
            content: The message content.
            session_id: Session identifier.
            channel: Source channel (for tool context routing).
            chat_id: Source chat ID (for tool context routing).

        Returns:
            The agent's response.
        """
        msg = InboundMessage(
            channel=channel,
            sender_id="user",
            chat_id=chat_id,
            content=content,
            session_id=session_id,
        )
        response = await self.process_message(msg)
        return response.content if response else ""
