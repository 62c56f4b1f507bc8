"""Async message queue for decoupled channel-agent communication."""

import asyncio
from typing import Awaitable, Callable

from loguru import logger

from errand.bus.events import InboundMessage, OutboundMessage
from errand.errors import BusOverflow

OutboundCallback = Callable[[OutboundMessage], Awaitable[None]]


class MessageBus:
    """
    Async message bus that decouples chat channels from the agent core.

    Inbound traffic is split into one bounded FIFO queue per session, so a
    slow or flooded conversation never delays another one. Every publish also
    announces the session id on a ready queue; the agent loop uses it to start
    a worker for sessions that have pending messages.

    Outbound replies share one queue and are routed to channel subscribers by
    ``dispatch_outbound``.
    """

    def __init__(self, capacity: int = 100, publish_timeout: float = 0.0):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self.publish_timeout = publish_timeout
        self._queues: dict[str, asyncio.Queue[InboundMessage]] = {}
        self._ready: asyncio.Queue[str] = asyncio.Queue()
        self.outbound: asyncio.Queue[OutboundMessage] = asyncio.Queue()
        self._outbound_subscribers: dict[str, list[OutboundCallback]] = {}
        self._running = False

    def _queue_for(self, session_id: str) -> asyncio.Queue[InboundMessage]:
        queue = self._queues.get(session_id)
        if queue is None:
            queue = asyncio.Queue(maxsize=self.capacity)
            self._queues[session_id] = queue
        return queue

    # ── Inbound ───────────────────────────────────────────────

    async def publish(self, msg: InboundMessage, timeout: float | None = None) -> None:
        """Enqueue a message on its session queue.

        Waits at most ``timeout`` seconds (default: ``publish_timeout``) for
        room in a full queue, then raises BusOverflow. A timeout of 0 never
        waits.
        """
        wait = self.publish_timeout if timeout is None else timeout
        queue = self._queue_for(msg.session_id)
        try:
            if wait <= 0:
                queue.put_nowait(msg)
            else:
                await asyncio.wait_for(queue.put(msg), timeout=wait)
        except (asyncio.QueueFull, asyncio.TimeoutError):
            logger.warning(
                "Bus overflow for session {} ({} pending)", msg.session_id, queue.qsize()
            )
            raise BusOverflow(msg.session_id, self.capacity) from None

        self._ready.put_nowait(msg.session_id)
        logger.trace("Inbound {} -> {} ({})", msg.channel, msg.session_id, msg.kind.value)

    # Compatibility alias used by channels
    publish_inbound = publish

    async def consume(self, session_id: str, timeout: float | None = None) -> InboundMessage | None:
        """Pull the next message for a session (FIFO). Returns None on timeout."""
        queue = self._queue_for(session_id)
        if timeout is None:
            return await queue.get()
        try:
            return await asyncio.wait_for(queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def try_consume(self, session_id: str) -> InboundMessage | None:
        """Pull the next message for a session without waiting."""
        queue = self._queues.get(session_id)
        if queue is None:
            return None
        try:
            return queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def next_ready(self, timeout: float | None = None) -> str | None:
        """Wait for the id of a session that received a message."""
        if timeout is None:
            return await self._ready.get()
        try:
            return await asyncio.wait_for(self._ready.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def pending(self, session_id: str) -> int:
        """Number of messages waiting for a session."""
        queue = self._queues.get(session_id)
        return queue.qsize() if queue else 0

    def session_ids(self) -> list[str]:
        """Sessions that have (or had) a queue on this bus."""
        return list(self._queues)

    @property
    def inbound_size(self) -> int:
        """Total pending inbound messages across sessions."""
        return sum(q.qsize() for q in self._queues.values())

    # ── Outbound ──────────────────────────────────────────────

    async def publish_outbound(self, msg: OutboundMessage) -> None:
        """Publish a response from the agent to channels."""
        await self.outbound.put(msg)
        logger.trace("Outbound -> {}:{}", msg.channel, msg.chat_id)

    async def consume_outbound(self) -> OutboundMessage:
        """Consume the next outbound message (blocks until available)."""
        return await self.outbound.get()

    def subscribe_outbound(self, channel: str, callback: OutboundCallback) -> None:
        """Subscribe to outbound messages for a specific channel."""
        self._outbound_subscribers.setdefault(channel, []).append(callback)

    async def dispatch_outbound(self) -> None:
        """
        Dispatch outbound messages to subscribed channels.
        Run this as a background task.
        """
        self._running = True
        while self._running:
            try:
                msg = await asyncio.wait_for(self.outbound.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            subscribers = self._outbound_subscribers.get(msg.channel, [])
            if not subscribers:
                logger.debug("No outbound subscriber for channel {}", msg.channel)
            for callback in subscribers:
                try:
                    await callback(msg)
                except Exception as e:
                    logger.error("Error dispatching to {}: {}", msg.channel, e)

    def stop(self) -> None:
        """Stop the dispatcher loop."""
        self._running = False

    @property
    def outbound_size(self) -> int:
        """Number of pending outbound messages."""
        return self.outbound.qsize()
