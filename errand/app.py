"""Application wiring: builds and runs every errand service from a Config.

Usage:
    app = build_app(load_config())
    await app.start()
    reply = await app.agent.submit("api:alice", "What is 2+2?")
    await app.stop()
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from loguru import logger

from errand.agent.loop import AgentLoop
from errand.agent.memory import KeywordRetriever, MemoryStore
from errand.bus.queue import MessageBus
from errand.channels.local import LocalChannel, LocalConfig
from errand.channels.manager import ChannelManager
from errand.config.schema import Config
from errand.cron.service import CronService
from errand.heartbeat.service import HeartbeatService
from errand.providers.base import LLMProvider
from errand.providers.gateway import ProviderGateway
from errand.providers.litellm_provider import LiteLLMProvider
from errand.session.manager import SessionManager
from errand.utils.helpers import get_data_path, get_sessions_path, get_workspace_path
from errand.utils.logging import configure_logging


class App:
    """All long-running services of one errand process.

    Construct with build_app(); start() and stop() drive the lifecycle.
    """

    def __init__(
        self,
        config: Config,
        bus: MessageBus,
        agent: AgentLoop,
        channels: ChannelManager,
        cron: CronService | None = None,
        heartbeat: HeartbeatService | None = None,
    ):
        self.config = config
        self.bus = bus
        self.agent = agent
        self.channels = channels
        self.cron = cron
        self.heartbeat = heartbeat
        self._agent_task: asyncio.Task | None = None
        self._started = False

    @property
    def local(self) -> LocalChannel | None:
        channel = self.channels.get_channel(LocalChannel.name)
        return channel if isinstance(channel, LocalChannel) else None

    async def start(self) -> None:
        """Start channels, scheduler, heartbeat and the agent loop."""
        if self._started:
            raise RuntimeError("App already started")
        if not self.agent.gateway.is_ready():
            logger.warning("Provider is not configured; requests will fail until an API key is set")

        await self.channels.start_all()
        if self.cron:
            await self.cron.start()
        if self.heartbeat:
            await self.heartbeat.start()
        self._agent_task = asyncio.create_task(self.agent.run())
        self._started = True
        logger.info("errand started (channels: {})", ", ".join(self.channels.enabled_channels) or "none")

    async def stop(self) -> None:
        """Stop everything in reverse order of start()."""
        if not self._started:
            return

        self.agent.stop()
        if self._agent_task:
            self._agent_task.cancel()
            try:
                await self._agent_task
            except asyncio.CancelledError:
                pass
            self._agent_task = None

        if self.heartbeat:
            self.heartbeat.stop()
        if self.cron:
            self.cron.stop()
        await self.channels.stop_all()

        self._started = False
        logger.info("errand stopped")

    async def run_forever(self) -> None:
        """Start and block until cancelled."""
        await self.start()
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await self.stop()


def build_provider(config: Config) -> LiteLLMProvider:
    """Create the LLM backend from the first configured provider."""
    defaults = config.agents.defaults
    name = config.get_provider_name()
    extra_headers = getattr(config.providers, name).extra_headers if name else None
    return LiteLLMProvider(
        api_key=config.get_api_key(),
        api_base=config.get_api_base(),
        default_model=defaults.model,
        extra_headers=extra_headers,
        provider_name=name,
        timeout=config.gateway.call_timeout,
    )


def build_app(
    config: Config,
    provider: LLMProvider | None = None,
    *,
    setup_logging: bool = True,
) -> App:
    """
    Wire every component described by ``config``.

    Args:
        config: Loaded configuration.
        provider: Optional pre-built backend (tests, record/replay).
        setup_logging: Install errand's loguru sinks.

    Returns:
        An App ready to start().
    """
    if setup_logging:
        log_file = Path(config.logging.file).expanduser() if config.logging.file else None
        configure_logging(config.logging.level, log_file)

    defaults = config.agents.defaults
    workspace = get_workspace_path(defaults.workspace)

    # 1. Bus and session store
    bus = MessageBus(capacity=config.bus.capacity, publish_timeout=config.bus.publish_timeout)
    sessions = SessionManager(get_sessions_path(), lock_timeout=config.sessions.lock_timeout)

    # 2. Provider gateway
    gateway = ProviderGateway(
        provider or build_provider(config),
        model=defaults.model,
        max_tokens=defaults.max_tokens,
        temperature=defaults.temperature,
        max_attempts=config.gateway.max_attempts,
        initial_delay=config.gateway.initial_delay,
        backoff_factor=config.gateway.backoff_factor,
        max_delay=config.gateway.max_delay,
    )

    # 3. Scheduler (fires through the bus)
    cron: CronService | None = None
    if config.cron.enabled:
        store_path = (
            Path(config.cron.store_path).expanduser()
            if config.cron.store_path
            else get_data_path() / "cron" / "jobs.json"
        )
        cron = CronService(store_path, bus=bus)

    # 4. Heartbeat (fires through the bus on its own session)
    heartbeat: HeartbeatService | None = None
    if config.heartbeat.enabled:
        heartbeat = HeartbeatService(workspace, bus=bus, interval_s=config.heartbeat.interval_s)

    # 5. Agent loop
    agent = AgentLoop(
        bus=bus,
        gateway=gateway,
        workspace=workspace,
        sessions=sessions,
        max_iterations=defaults.max_tool_iterations,
        memory_window=defaults.memory_window,
        tool_timeout=config.tools.timeout,
        max_parallel_tools=config.tools.max_parallel,
        retriever=KeywordRetriever(MemoryStore(workspace)),
        brave_api_key=config.tools.web.search.api_key or None,
        web_max_results=config.tools.web.search.max_results,
        web_fetch_max_chars=config.tools.web.fetch_max_chars,
        exec_timeout=config.tools.exec.timeout,
        restrict_to_workspace=config.tools.restrict_to_workspace,
        cron_service=cron,
        on_scheduled_result=cron.record_outcome if cron else None,
        on_heartbeat_result=heartbeat.record_reply if heartbeat else None,
    )

    # 6. Channels
    channels = ChannelManager(bus)
    local_cfg = config.channels.local
    if local_cfg.enabled:
        channels.add(LocalChannel(bus, LocalConfig(enabled=True, allow_from=list(local_cfg.allow_from))))

    return App(config, bus, agent, channels, cron=cron, heartbeat=heartbeat)
