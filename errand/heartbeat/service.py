"""Heartbeat service - periodic agent wake-up to check for tasks."""

import asyncio
from pathlib import Path
from typing import Awaitable, Callable

from loguru import logger

from errand.bus.events import InboundMessage, MessageKind
from errand.bus.queue import MessageBus

# Default interval: 30 minutes
DEFAULT_HEARTBEAT_INTERVAL_S = 30 * 60

# The prompt sent to agent during heartbeat
HEARTBEAT_PROMPT = """Read HEARTBEAT.md in your workspace (if it exists).
Follow any instructions or tasks listed there.
If nothing needs attention, reply with just: HEARTBEAT_OK"""

# Token that indicates "nothing to do"
HEARTBEAT_OK_TOKEN = "HEARTBEAT_OK"

# Lines starting with an unchecked box are placeholders, not tasks
_SKIPPED_PREFIXES = ("#", "<!--", "- [ ]", "* [ ]")


def _is_heartbeat_empty(content: str | None) -> bool:
    """Check if HEARTBEAT.md has no actionable content."""
    if not content:
        return True

    for line in content.split("\n"):
        line = line.strip()
        if not line or line.startswith(_SKIPPED_PREFIXES):
            continue
        return False  # Found actionable content

    return True


class HeartbeatService:
    """
    Periodic heartbeat service that wakes the agent to check for tasks.

    The agent reads HEARTBEAT.md from the workspace and executes any
    tasks listed there. If nothing needs attention, it replies HEARTBEAT_OK.

    With ``bus`` the prompt is published as a scheduled trigger for the
    ``session_id`` session and the agent loop hands the reply back through
    record_reply(). ``on_heartbeat`` processes the prompt in-process instead.
    """

    def __init__(
        self,
        workspace: Path,
        on_heartbeat: Callable[[str], Awaitable[str]] | None = None,
        bus: MessageBus | None = None,
        interval_s: float = DEFAULT_HEARTBEAT_INTERVAL_S,
        enabled: bool = True,
        session_id: str = "heartbeat",
    ):
        self.workspace = Path(workspace)
        self.on_heartbeat = on_heartbeat
        self.bus = bus
        self.interval_s = interval_s
        self.enabled = enabled
        self.session_id = session_id
        self.last_ok: bool | None = None
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def heartbeat_file(self) -> Path:
        return self.workspace / "HEARTBEAT.md"

    def _read_heartbeat_file(self) -> str | None:
        """Read HEARTBEAT.md content."""
        if self.heartbeat_file.exists():
            try:
                return self.heartbeat_file.read_text(encoding="utf-8")
            except OSError as e:
                logger.warning("Heartbeat: cannot read {}: {}", self.heartbeat_file, e)
                return None
        return None

    async def start(self) -> None:
        """Start the heartbeat service."""
        if not self.enabled:
            logger.info("Heartbeat disabled")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Heartbeat started (every {}s)", self.interval_s)

    def stop(self) -> None:
        """Stop the heartbeat service."""
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None

    async def _run_loop(self) -> None:
        """Main heartbeat loop."""
        while self._running:
            await asyncio.sleep(self.interval_s)
            if not self._running:
                break
            try:
                await self._tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Heartbeat error")

    async def _tick(self) -> bool:
        """Execute a single heartbeat tick. Returns True if the agent was woken."""
        content = self._read_heartbeat_file()

        # Skip if HEARTBEAT.md is empty or doesn't exist
        if _is_heartbeat_empty(content):
            logger.debug("Heartbeat: no tasks (HEARTBEAT.md empty)")
            return False

        logger.info("Heartbeat: checking for tasks...")

        if self.on_heartbeat is not None:
            self.record_reply(await self.on_heartbeat(HEARTBEAT_PROMPT))
            return True

        if self.bus is not None:
            await self.bus.publish(InboundMessage(
                channel="heartbeat",
                sender_id="heartbeat",
                chat_id="heartbeat",
                content=HEARTBEAT_PROMPT,
                kind=MessageKind.SCHEDULED_TRIGGER,
                session_id=self.session_id,
                metadata={"heartbeat": True},
            ))
            return True

        logger.warning("Heartbeat: no handler or bus configured")
        return False

    async def trigger_now(self) -> bool:
        """Manually trigger a heartbeat."""
        return await self._tick()

    def record_reply(self, response: str | None) -> bool:
        """Inspect the agent's reply to a heartbeat. Returns True for HEARTBEAT_OK."""
        self.last_ok = HEARTBEAT_OK_TOKEN in (response or "").upper().replace(" ", "_")
        if self.last_ok:
            logger.info("Heartbeat: OK (no action needed)")
        else:
            logger.info("Heartbeat: completed task")
        return self.last_ok
