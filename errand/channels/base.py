"""Base channel interface for chat platforms."""

from abc import ABC, abstractmethod
from typing import Any

from loguru import logger

from errand.bus.events import InboundMessage, MessageKind, OutboundMessage
from errand.bus.queue import MessageBus
from errand.errors import BusOverflow


class BaseChannel(ABC):
    """
    Abstract base class for chat channel implementations.

    Each channel (Telegram, CLI, in-process, ...) implements this interface
    to translate its protocol into bus messages and back.
    """

    name: str = "base"

    def __init__(self, config: Any, bus: MessageBus):
        """
        Initialize the channel.

        Args:
            config: Channel-specific configuration (needs ``allow_from``).
            bus: The message bus for communication.
        """
        self.config = config
        self.bus = bus
        self._running = False

    @abstractmethod
    async def start(self) -> None:
        """Start the channel and begin listening for messages."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the channel and clean up resources."""
        pass

    @abstractmethod
    async def send(self, msg: OutboundMessage) -> None:
        """Send a message through this channel."""
        pass

    def is_allowed(self, sender_id: str) -> bool:
        """
        Check if a sender is allowed to use this bot.

        An empty allow list permits everyone. Composite ids ("123|name")
        match on any part.
        """
        allow_list = getattr(self.config, "allow_from", None) or []
        if not allow_list:
            return True

        sender_str = str(sender_id)
        if sender_str in allow_list:
            return True
        if "|" in sender_str:
            return any(part and part in allow_list for part in sender_str.split("|"))
        return False

    async def _handle_message(
        self,
        sender_id: str,
        chat_id: str,
        content: str,
        media: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        kind: MessageKind = MessageKind.USER_INPUT,
    ) -> bool:
        """
        Handle an incoming message from the chat platform.

        Checks permissions and publishes to the bus. Returns False when the
        message was refused or the session queue is full.
        """
        if not self.is_allowed(sender_id):
            logger.warning("Access denied for sender {} on channel {}", sender_id, self.name)
            return False

        msg = InboundMessage(
            channel=self.name,
            sender_id=str(sender_id),
            chat_id=str(chat_id),
            content=content,
            kind=kind,
            media=media or [],
            metadata=metadata or {},
        )
        try:
            await self.bus.publish(msg)
        except BusOverflow as e:
            logger.warning("{}: queue full for {}: {}", self.name, msg.session_id, e.message)
            await self.bus.publish_outbound(OutboundMessage(
                channel=self.name,
                chat_id=str(chat_id),
                content="I'm still working through earlier messages. Please try again shortly.",
                session_id=msg.session_id,
                request_id=msg.request_id,
                is_error=True,
            ))
            return False
        return True

    @property
    def is_running(self) -> bool:
        """Check if the channel is running."""
        return self._running
