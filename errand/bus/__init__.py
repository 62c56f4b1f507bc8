"""Message bus module for decoupled channel-agent communication."""

from errand.bus.events import InboundMessage, MessageKind, OutboundMessage
from errand.bus.queue import MessageBus

__all__ = ["MessageBus", "InboundMessage", "OutboundMessage", "MessageKind"]
