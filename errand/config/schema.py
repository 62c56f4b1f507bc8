"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Base(BaseModel):
    """Accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LocalChannelConfig(Base):
    """In-process channel configuration."""

    enabled: bool = True
    allow_from: list[str] = Field(default_factory=list)  # Allowed sender IDs


class ChannelsConfig(Base):
    """Configuration for chat channels."""

    local: LocalChannelConfig = Field(default_factory=LocalChannelConfig)


class AgentDefaults(Base):
    """Default agent configuration."""

    workspace: str = "~/.errand/workspace"
    model: str = "anthropic/claude-sonnet-4-5"
    max_tokens: int = 8192
    temperature: float = 0.7
    max_tool_iterations: int = Field(default=5, ge=1)
    memory_window: int = Field(default=50, ge=1)


class AgentsConfig(Base):
    """Agent configuration."""

    defaults: AgentDefaults = Field(default_factory=AgentDefaults)


class ProviderConfig(Base):
    """LLM provider configuration."""

    api_key: str = ""
    api_base: str | None = None
    extra_headers: dict[str, str] | None = None


class ProvidersConfig(Base):
    """Configuration for LLM providers. The first one with a key wins."""

    openrouter: ProviderConfig = Field(default_factory=ProviderConfig)
    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    deepseek: ProviderConfig = Field(default_factory=ProviderConfig)
    gemini: ProviderConfig = Field(default_factory=ProviderConfig)
    vllm: ProviderConfig = Field(default_factory=ProviderConfig)


class GatewayConfig(Base):
    """Retry policy for the provider gateway."""

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 30.0
    call_timeout: float = 45.0  # Per-call timeout for the backend


class BusConfig(Base):
    """Message bus configuration."""

    capacity: int = Field(default=100, ge=1)  # Per-session queue bound
    publish_timeout: float = 0.0  # Seconds to wait on a full queue


class SessionsConfig(Base):
    """Session store configuration."""

    lock_timeout: float = 10.0


class WebSearchConfig(Base):
    """Web search tool configuration."""

    api_key: str = ""  # Brave Search API key
    max_results: int = 5


class WebToolsConfig(Base):
    """Web tools configuration."""

    search: WebSearchConfig = Field(default_factory=WebSearchConfig)
    fetch_max_chars: int = 50000


class ExecToolConfig(Base):
    """Shell exec tool configuration."""

    timeout: int = 60


class ToolsConfig(Base):
    """Tools configuration."""

    web: WebToolsConfig = Field(default_factory=WebToolsConfig)
    exec: ExecToolConfig = Field(default_factory=ExecToolConfig)
    timeout: float = 120.0  # Registry-wide bound for any single tool call
    max_parallel: int = Field(default=1, ge=1)  # Tool calls in flight per assistant turn
    restrict_to_workspace: bool = True  # Guard shell commands against paths outside the workspace


class HeartbeatConfig(Base):
    """Heartbeat configuration."""

    enabled: bool = True
    interval_s: int = 30 * 60


class CronConfig(Base):
    """Cron configuration."""

    enabled: bool = True
    store_path: str | None = None  # Default: <data dir>/cron/jobs.json


class LoggingConfig(Base):
    """Logging configuration."""

    level: str = "INFO"
    file: str | None = None


class Config(Base):
    """Root configuration for errand."""

    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    bus: BusConfig = Field(default_factory=BusConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    cron: CronConfig = Field(default_factory=CronConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def workspace_path(self) -> Path:
        """Get expanded workspace path."""
        return Path(self.agents.defaults.workspace).expanduser()

    def _match_provider(self) -> tuple[str, ProviderConfig] | None:
        for name in ("openrouter", "anthropic", "openai", "deepseek", "gemini"):
            provider = getattr(self.providers, name)
            if provider.api_key:
                return name, provider
        if self.providers.vllm.api_base:
            return "vllm", self.providers.vllm
        return None

    def get_provider_name(self) -> str | None:
        match = self._match_provider()
        return match[0] if match else None

    def get_api_key(self) -> str | None:
        """Get API key in priority order: OpenRouter > Anthropic > OpenAI > DeepSeek > Gemini > vLLM."""
        match = self._match_provider()
        return (match[1].api_key or None) if match else None

    def get_api_base(self) -> str | None:
        """Get API base URL if using OpenRouter or vLLM."""
        match = self._match_provider()
        if match is None:
            return None
        name, provider = match
        if name == "openrouter":
            return provider.api_base or "https://openrouter.ai/api/v1"
        return provider.api_base
