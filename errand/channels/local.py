"""In-process channel.

Provides programmatic message injection and response capture. Uses the
same _handle_message() path as network channels, so the agent loop
processes local messages identically to real ones.

Usage:
    local = LocalChannel(bus=bus)
    await local.start()
    await local.inject_message("hello", sender_id="user_1")
    response = await local.wait_for_response(timeout=30.0)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from errand.bus.events import OutboundMessage
from errand.bus.queue import MessageBus
from errand.channels.base import BaseChannel


@dataclass
class LocalConfig:
    """Minimal config that satisfies BaseChannel expectations.

    No allow_from list by default: all senders permitted.
    """

    enabled: bool = True
    allow_from: list[str] = field(default_factory=list)


class LocalChannel(BaseChannel):
    """Programmatic channel for embedding callers and tests."""

    name = "local"

    def __init__(self, bus: MessageBus, config: LocalConfig | None = None):
        super().__init__(config or LocalConfig(), bus)
        self._responses: list[OutboundMessage] = []
        self._read = 0
        self._response_event = asyncio.Event()

    # ── Lifecycle ─────────────────────────────────────────

    async def start(self) -> None:
        self._running = True
        logger.debug("LocalChannel started")

    async def stop(self) -> None:
        self._running = False
        logger.debug("LocalChannel stopped")

    async def send(self, msg: OutboundMessage) -> None:
        """Capture an outbound message (called by the channel manager)."""
        self._responses.append(msg)
        self._response_event.set()

    # ── Message injection ─────────────────────────────────

    async def inject_message(
        self,
        content: str,
        sender_id: str = "user",
        chat_id: str = "default",
        *,
        media: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Inject a message through the standard _handle_message() path."""
        return await self._handle_message(
            sender_id=sender_id,
            chat_id=chat_id,
            content=content,
            media=media,
            metadata=metadata,
        )

    # ── Response capture ──────────────────────────────────

    async def wait_for_response(self, timeout: float = 30.0) -> OutboundMessage | None:
        """Wait for the next unread response. Returns None on timeout."""
        deadline = asyncio.get_running_loop().time() + timeout
        while self._read >= len(self._responses):
            self._response_event.clear()
            remaining = deadline - asyncio.get_running_loop().time()
            if remaining <= 0:
                return None
            try:
                await asyncio.wait_for(self._response_event.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                if self._read >= len(self._responses):
                    return None

        msg = self._responses[self._read]
        self._read += 1
        return msg

    def get_responses(self) -> list[OutboundMessage]:
        """Get all captured responses."""
        return list(self._responses)

    def clear_responses(self) -> None:
        self._responses.clear()
        self._read = 0
        self._response_event.clear()

    @property
    def response_count(self) -> int:
        return len(self._responses)
