"""Configuration types for toolchat."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class TransportKind(Enum):
    """How a tool provider is reached."""

    STREAMABLE_HTTP = "streamable_http"
    SSE = "sse"  # Server-push event stream
    STDIO = "stdio"  # Spawned subprocess over stdin/stdout


@dataclass(frozen=True, slots=True)
class ToolProviderConfig:
    """Configuration for one MCP tool provider."""

    transport: TransportKind = TransportKind.STREAMABLE_HTTP
    url: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    command: str | None = None
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    use_proxy: bool = False

    @property
    def is_network(self) -> bool:
        return self.transport is not TransportKind.STDIO


@dataclass(frozen=True, slots=True)
class ProxyConfig:
    """Global outbound proxy shared by providers that opt in."""

    url: str = ""


@dataclass(frozen=True, slots=True)
class AIConfig:
    """Model endpoint settings; also the shape of a per-user override."""

    provider: str = "openai"
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    default_prompt: str = "You are a helpful assistant."


@dataclass(frozen=True, slots=True)
class Persona:
    """A custom system prompt bound to one platform-qualified user."""

    name: str
    prompt: str


@dataclass(frozen=True, slots=True)
class BroadcastConfig:
    """Daily unattended broadcast settings."""

    enabled: bool = False
    time: str = "08:00"  # HH:MM, local time
    targets: tuple[str, ...] = ()  # "platform:recipient"
    prompt: str = "Fetch today's top news and summarize the key events."


@dataclass(slots=True)
class AppConfig:
    """Static configuration supplied once at process start."""

    ai: AIConfig = field(default_factory=AIConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    mcp_servers: dict[str, ToolProviderConfig] = field(default_factory=dict)
    broadcast: BroadcastConfig = field(default_factory=BroadcastConfig)
    platform_prompts: dict[str, str] = field(default_factory=dict)
    personas: dict[str, Persona] = field(default_factory=dict)
    allowed_users: tuple[str, ...] = ()
    allowed: dict[str, tuple[str, ...]] = field(default_factory=dict)
    max_iterations: int = 5
    request_timeout: float = 120.0
    log_level: str = "INFO"

    def is_allowed(self, platform: str, user_id: str) -> bool:
        """Check a user against the platform list, then the global list.

        A platform list containing ``"*"`` admits everyone on that platform.
        """
        platform_list = self.allowed.get(platform.lower(), ())
        if "*" in platform_list or user_id in platform_list:
            return True
        return user_id in self.allowed_users

    def platform_prompt(self, platform: str) -> str:
        """Final-answer formatting instruction for a platform ("" when unset)."""
        return self.platform_prompts.get(platform.lower(), "")

    def persona_for(self, user_key: str) -> Persona | None:
        return self.personas.get(user_key)
