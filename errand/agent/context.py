"""Context builder for assembling agent prompts."""

import base64
import mimetypes
import platform
import time
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger

from errand.agent.memory import KeywordRetriever, MemoryRetriever, MemoryStore


class ContextBuilder:
    """
    Builds the context (system prompt + messages) for the agent.

    The system prompt is a fixed directive, the persona/bootstrap files found
    in the workspace and the memory excerpts the retriever ranks highest for
    the current message. History is the bounded window the session hands in.
    """

    BOOTSTRAP_FILES = ["AGENTS.md", "SOUL.md", "USER.md", "TOOLS.md", "IDENTITY.md"]

    def __init__(
        self,
        workspace: Path,
        retriever: MemoryRetriever | None = None,
        memory_limit: int = 5,
    ):
        self.workspace = Path(workspace)
        self.memory = MemoryStore(self.workspace)
        self.retriever = retriever or KeywordRetriever(self.memory)
        self.memory_limit = memory_limit

    def build_system_prompt(self, session_id: str = "", topic: str = "") -> str:
        """
        Build the system prompt from identity, bootstrap files and memory.

        Args:
            session_id: Session the prompt is built for (passed to the retriever).
            topic: Text used to select memory excerpts, usually the current message.

        Returns:
            Complete system prompt.
        """
        parts = [self._get_identity()]

        bootstrap = self._load_bootstrap_files()
        if bootstrap:
            parts.append(bootstrap)

        memory = self._get_memory_context(session_id, topic)
        if memory:
            parts.append(f"# Memory\n\n{memory}")

        return "\n\n---\n\n".join(parts)

    def _get_identity(self) -> str:
        """Get the core identity section."""
        now = datetime.now().strftime("%Y-%m-%d %H:%M (%A)")
        tz = time.strftime("%Z") or "UTC"
        workspace_path = str(self.workspace.expanduser().resolve())
        system = platform.system()
        runtime = f"{'macOS' if system == 'Darwin' else system} {platform.machine()}, Python {platform.python_version()}"

        return f"""# errand ◆

You are errand, a personal automation agent. You have access to tools that allow you to:
- Read, write, and edit files
- Execute shell commands
- Search the web and fetch web pages
- Send messages to users on chat channels
- Schedule reminders and recurring tasks

## Current Time
{now} ({tz})

## Runtime
{runtime}

## Workspace
Your workspace is at: {workspace_path}
- Long-term memory: {workspace_path}/memory/MEMORY.md
- Daily notes: {workspace_path}/memory/YYYY-MM-DD.md

All file and shell tools are confined to the workspace. Paths outside it are refused.
When a tool returns an error, read it, correct the call and try again, or explain the problem.
Reply directly with text for conversations. Only use the 'message' tool to reach a different chat."""

    def _load_bootstrap_files(self) -> str:
        """Load all bootstrap files from workspace."""
        parts = []

        for filename in self.BOOTSTRAP_FILES:
            file_path = self.workspace / filename
            if file_path.exists():
                try:
                    content = file_path.read_text(encoding="utf-8")
                except OSError as e:
                    logger.warning("Cannot read bootstrap file {}: {}", filename, e)
                    continue
                parts.append(f"## {filename}\n\n{content}")

        return "\n\n".join(parts) if parts else ""

    def _get_memory_context(self, session_id: str, topic: str) -> str:
        if not topic or self.memory_limit <= 0:
            return ""
        try:
            excerpts = self.retriever.query(session_id, topic, self.memory_limit)
        except Exception as e:
            # Requests proceed without the memory section
            logger.warning("Memory retrieval failed for {}: {}", session_id, e)
            return ""
        return "\n\n".join(f"[{e.source}] {e.text}" for e in excerpts)

    def build_messages(
        self,
        history: list[dict[str, Any]],
        current_message: str,
        session_id: str = "",
        media: list[str] | None = None,
        channel: str | None = None,
        chat_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """
        Build the complete message list for an LLM call.

        Args:
            history: Recent conversation messages, ending with the current
                user turn (it is persisted before the context is built).
            current_message: The new user message, used for memory retrieval.
            session_id: Session key.
            media: Optional list of local file paths for images.
            channel: Current channel (telegram, cli, ...).
            chat_id: Current chat/user ID.

        Returns:
            List of messages including system prompt.
        """
        system_prompt = self.build_system_prompt(session_id, current_message)
        if channel and chat_id:
            system_prompt += f"\n\n## Current Session\nChannel: {channel}\nChat ID: {chat_id}"

        messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        messages.extend(dict(m) for m in history)

        if media and messages[-1].get("role") == "user":
            messages[-1]["content"] = self._build_user_content(messages[-1].get("content") or "", media)

        return messages

    def _build_user_content(self, text: str, media: list[str]) -> str | list[dict[str, Any]]:
        """Build user message content with base64-encoded images."""
        images = []
        for path in media:
            p = Path(path)
            mime, _ = mimetypes.guess_type(path)
            if not p.is_file() or not mime or not mime.startswith("image/"):
                continue
            b64 = base64.b64encode(p.read_bytes()).decode()
            images.append({"type": "image_url", "image_url": {"url": f"data:{mime};base64,{b64}"}})

        if not images:
            return text
        return images + [{"type": "text", "text": text}]

    def add_tool_result(
        self,
        messages: list[dict[str, Any]],
        tool_call_id: str,
        tool_name: str,
        result: str,
    ) -> list[dict[str, Any]]:
        """Add a tool result to the message list."""
        messages.append({
            "role": "tool",
            "tool_call_id": tool_call_id,
            "name": tool_name,
            "content": result,
        })
        return messages

    def add_assistant_message(
        self,
        messages: list[dict[str, Any]],
        content: str | None,
        tool_calls: list[dict[str, Any]] | None = None,
        reasoning_content: str | None = None,
    ) -> list[dict[str, Any]]:
        """
        Add an assistant message to the message list.

        Args:
            messages: Current message list.
            content: Message content.
            tool_calls: Optional tool calls.
            reasoning_content: Thinking output (Kimi, DeepSeek-R1, etc.).

        Returns:
            Updated message list.
        """
        msg: dict[str, Any] = {"role": "assistant", "content": content or ""}

        if tool_calls:
            msg["tool_calls"] = tool_calls

        # Thinking models reject history without this
        if reasoning_content:
            msg["reasoning_content"] = reasoning_content

        messages.append(msg)
        return messages
