"""Event types for the message bus."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class MessageKind(str, Enum):
    """Payload variant carried by an inbound message."""

    USER_INPUT = "user_input"
    SCHEDULED_TRIGGER = "scheduled_trigger"
    CHANNEL_EVENT = "channel_event"
    TOOL_TRIGGER = "tool_trigger"


def _new_request_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class InboundMessage:
    """Message received from a chat channel or produced by the scheduler."""

    channel: str  # source: telegram, cli, cron, heartbeat, ...
    sender_id: str  # User identifier
    chat_id: str  # Chat/channel identifier
    content: str  # Message text
    kind: MessageKind = MessageKind.USER_INPUT
    session_id: str = ""  # Defaults to channel:chat_id
    request_id: str = field(default_factory=_new_request_id)
    timestamp: datetime = field(default_factory=datetime.now)
    media: list[str] = field(default_factory=list)  # Media paths or URLs
    metadata: dict[str, Any] = field(default_factory=dict)  # Channel-specific data

    def __post_init__(self) -> None:
        if not self.session_id:
            self.session_id = f"{self.channel}:{self.chat_id}"
        if not isinstance(self.kind, MessageKind):
            self.kind = MessageKind(self.kind)

    @property
    def source(self) -> str:
        """Identity of the producer (channel or scheduler)."""
        return self.channel

    @property
    def session_key(self) -> str:
        """Unique key for session identification."""
        return self.session_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "source": self.channel,
            "kind": self.kind.value,
            "payload": self.content,
            "sender_id": self.sender_id,
            "chat_id": self.chat_id,
            "request_id": self.request_id,
            "timestamp": self.timestamp.isoformat(),
            "media": list(self.media),
            "metadata": dict(self.metadata),
        }


@dataclass
class OutboundMessage:
    """Message to send to a chat channel."""

    channel: str
    chat_id: str
    content: str
    session_id: str = ""
    request_id: str | None = None  # Request this replies to
    reply_to: str | None = None
    is_error: bool = False
    media: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.session_id:
            self.session_id = f"{self.channel}:{self.chat_id}"
