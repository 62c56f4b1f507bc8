"""Channel manager for coordinating chat channels."""

import asyncio
from typing import Any

from loguru import logger

from errand.bus.queue import MessageBus
from errand.channels.base import BaseChannel


class ChannelManager:
    """
    Manages chat channels and coordinates message routing.

    Responsibilities:
    - Register channels and subscribe them to their outbound traffic
    - Start/stop channels together
    - Run the outbound dispatcher
    """

    def __init__(self, bus: MessageBus):
        self.bus = bus
        self.channels: dict[str, BaseChannel] = {}
        self._tasks: list[asyncio.Task] = []
        self._dispatch_task: asyncio.Task | None = None

    def add(self, channel: BaseChannel) -> None:
        """Register a channel. Its name must be unique."""
        if channel.name in self.channels:
            raise ValueError(f"Channel already registered: {channel.name}")
        self.channels[channel.name] = channel
        self.bus.subscribe_outbound(channel.name, channel.send)
        logger.info("{} channel registered", channel.name)

    async def start_all(self) -> None:
        """Start the outbound dispatcher and every channel."""
        if not self.channels:
            logger.warning("No channels enabled")

        self._dispatch_task = asyncio.create_task(self.bus.dispatch_outbound())
        for name, channel in self.channels.items():
            logger.info("Starting {} channel...", name)
            self._tasks.append(asyncio.create_task(self._start_channel(name, channel)))

    @staticmethod
    async def _start_channel(name: str, channel: BaseChannel) -> None:
        try:
            await channel.start()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Channel {} failed to start", name)

    async def stop_all(self) -> None:
        """Stop all channels and the dispatcher."""
        logger.info("Stopping all channels...")

        self.bus.stop()
        if self._dispatch_task:
            self._dispatch_task.cancel()
            self._dispatch_task = None

        for name, channel in self.channels.items():
            try:
                await channel.stop()
                logger.info("Stopped {} channel", name)
            except Exception as e:
                logger.error("Error stopping {}: {}", name, e)

        for task in self._tasks:
            task.cancel()
        self._tasks.clear()

    def get_channel(self, name: str) -> BaseChannel | None:
        """Get a channel by name."""
        return self.channels.get(name)

    def get_status(self) -> dict[str, Any]:
        """Get status of all channels."""
        return {
            name: {"running": channel.is_running}
            for name, channel in self.channels.items()
        }

    @property
    def enabled_channels(self) -> list[str]:
        """Get list of enabled channel names."""
        return list(self.channels.keys())
