"""Message tool for sending messages to users."""

from typing import Any, Awaitable, Callable

from errand.agent.tools.base import Tool, current_tool_context
from errand.bus.events import OutboundMessage
from errand.errors import ToolExecutionError, ValidationError


class MessageTool(Tool):
    """Tool to send messages to users on chat channels."""

    def __init__(self, send_callback: Callable[[OutboundMessage], Awaitable[None]]):
        self._send_callback = send_callback

    @property
    def name(self) -> str:
        return "message"

    @property
    def description(self) -> str:
        return "Send a message to the user. Use this when you want to communicate something mid-task."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "content": {"type": "string", "description": "The message content to send"},
                "channel": {"type": "string", "description": "Optional: target channel (defaults to current)"},
                "chat_id": {"type": "string", "description": "Optional: target chat/user ID (defaults to current)"},
            },
            "required": ["content"],
        }

    async def execute(
        self,
        content: str,
        channel: str | None = None,
        chat_id: str | None = None,
        **kwargs: Any,
    ) -> str:
        ctx = current_tool_context.get()
        channel = channel or (ctx.channel if ctx else None)
        chat_id = chat_id or (ctx.chat_id if ctx else None)
        if not channel or not chat_id:
            raise ValidationError("No target channel/chat specified")

        msg = OutboundMessage(
            channel=channel,
            chat_id=chat_id,
            content=content,
            session_id=ctx.session_id if ctx else "",
        )
        try:
            await self._send_callback(msg)
        except Exception as e:
            raise ToolExecutionError(f"Error sending message: {e}") from e
        return f"Message sent to {channel}:{chat_id}"
