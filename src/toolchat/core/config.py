"""Configuration loading (YAML file, .env, environment)."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from toolchat.errors import ConfigError
from toolchat.mcp.transport import expand_env
from toolchat.types.config import (
    AIConfig,
    AppConfig,
    BroadcastConfig,
    Persona,
    ProxyConfig,
    ToolProviderConfig,
    TransportKind,
)

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "TOOLCHAT_CONFIG"
DEFAULT_CONFIG_PATH = "config.yaml"
_LEGACY_ALLOW_PREFIX = "allowed_"


def default_config_path() -> Path:
    """``$TOOLCHAT_CONFIG`` if set, else ``config.yaml`` in the working directory."""
    return Path(os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH)


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load the static configuration.

    ``.env`` is read first (existing environment variables win), so the file
    can reference secrets such as ``api_key: ${OPENAI_API_KEY}``.

    Raises:
        ConfigError: Missing or unreadable file, invalid YAML, or bad values.
    """
    load_dotenv()
    config_path = Path(path) if path is not None else default_config_path()
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read config file {config_path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {config_path}: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path}: top level must be a mapping")
    config = parse_config(data)
    logger.debug(
        "Loaded config from %s: %d MCP server(s), broadcast=%s",
        config_path, len(config.mcp_servers), config.broadcast.enabled,
    )
    return config


def parse_config(data: dict[str, Any]) -> AppConfig:
    """Parse raw YAML data into :class:`AppConfig`."""
    config = AppConfig()

    config.ai = _parse_ai(_section(data, "ai"))
    proxy = _section(data, "proxy")
    if proxy.get("url"):
        config.proxy = ProxyConfig(url=str(proxy["url"]))

    servers = _section(data, "mcpServers")
    config.mcp_servers = {
        str(name): parse_server(str(name), raw if raw is not None else {})
        for name, raw in servers.items()
    }

    broadcast = _section(data, "broadcast") or _section(data, "push")
    if broadcast:
        config.broadcast = _parse_broadcast(broadcast)

    config.platform_prompts = {
        str(k).lower(): str(v) for k, v in _section(data, "platform_prompts").items()
    }
    personas = _section(data, "personas") or _section(data, "girlfriend")
    config.personas = {
        user_key(*_split_key(str(key))): _parse_persona(str(key), raw)
        for key, raw in personas.items()
    }

    config.allowed_users = _str_tuple(data.get("allowed_users"), "allowed_users")
    allowed: dict[str, tuple[str, ...]] = {
        str(platform).lower(): _str_tuple(ids, f"allowed.{platform}")
        for platform, ids in _section(data, "allowed").items()
    }
    for key, ids in data.items():
        key = str(key)
        if key.startswith(_LEGACY_ALLOW_PREFIX) and key != "allowed_users":
            platform = key[len(_LEGACY_ALLOW_PREFIX):].lower()
            allowed[platform] = allowed.get(platform, ()) + _str_tuple(ids, key)
    config.allowed = allowed

    if "max_iterations" in data:
        config.max_iterations = _int(data["max_iterations"], "max_iterations")
    if "request_timeout" in data:
        config.request_timeout = _float(data["request_timeout"], "request_timeout")
    log_level = data.get("log_level") or _section(data, "bot").get("log_level")
    if log_level:
        config.log_level = str(log_level).upper()

    return config


def infer_transport(raw: dict[str, Any]) -> TransportKind:
    """A command (or ``type: stdio``) means stdio, ``type: sse`` means SSE.

    Anything else, including no type at all, is streamable HTTP.
    """
    kind = str(raw.get("type") or "").strip().lower()
    if raw.get("command") or kind == "stdio":
        return TransportKind.STDIO
    if kind == "sse":
        return TransportKind.SSE
    return TransportKind.STREAMABLE_HTTP


def parse_server(name: str, raw: dict[str, Any]) -> ToolProviderConfig:
    """Parse one ``mcpServers`` entry."""
    if not isinstance(raw, dict):
        raise ConfigError(f"mcpServers.{name} must be a mapping")
    args = raw.get("args") or []
    if not isinstance(args, list):
        raise ConfigError(f"mcpServers.{name}.args must be a list")
    return ToolProviderConfig(
        transport=infer_transport(raw),
        url=str(raw["url"]) if raw.get("url") else None,
        headers=_str_map(raw.get("headers"), f"mcpServers.{name}.headers"),
        command=str(raw["command"]) if raw.get("command") else None,
        args=tuple(str(a) for a in args),
        env=_str_map(raw.get("env"), f"mcpServers.{name}.env"),
        use_proxy=bool(raw.get("use_proxy", False)),
    )


def user_key(platform: str, user_id: str) -> str:
    """The ``platform:user_id`` key used for personas and overrides."""
    return f"{platform.lower()}:{user_id}"


def _split_key(key: str) -> tuple[str, str]:
    platform, sep, user_id = key.partition(":")
    if not sep or not platform or not user_id:
        raise ConfigError(f"persona key {key!r} must look like 'platform:user_id'")
    return platform, user_id


def _parse_ai(raw: dict[str, Any]) -> AIConfig:
    defaults = AIConfig()
    return AIConfig(
        provider=str(raw.get("provider") or defaults.provider),
        base_url=str(raw.get("base_url") or defaults.base_url),
        api_key=expand_env(str(raw.get("api_key") or "")),
        model=str(raw.get("model") or defaults.model),
        default_prompt=str(raw.get("default_prompt") or defaults.default_prompt),
    )


def _parse_broadcast(raw: dict[str, Any]) -> BroadcastConfig:
    defaults = BroadcastConfig()
    return BroadcastConfig(
        enabled=bool(raw.get("enabled", False)),
        time=_clock_time(raw.get("time")) or defaults.time,
        targets=_str_tuple(raw.get("targets"), "broadcast.targets"),
        prompt=str(raw.get("prompt") or defaults.prompt),
    )


def _clock_time(value: Any) -> str:
    # YAML 1.1 reads an unquoted 08:00 as the base-60 integer 480.
    if isinstance(value, int) and not isinstance(value, bool):
        return f"{value // 60:02d}:{value % 60:02d}"
    return str(value) if value else ""


def _parse_persona(key: str, raw: Any) -> Persona:
    if not isinstance(raw, dict) or not raw.get("prompt"):
        raise ConfigError(f"persona {key!r} needs a prompt")
    return Persona(name=str(raw.get("name") or ""), prompt=str(raw["prompt"]))


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{key} must be a mapping")
    return value


def _str_tuple(value: Any, where: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigError(f"{where} must be a list")
    return tuple(str(v) for v in value)


def _str_map(value: Any, where: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{where} must be a mapping")
    return {str(k): str(v) for k, v in value.items()}


def _int(value: Any, where: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{where} must be an integer") from exc


def _float(value: Any, where: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{where} must be a number") from exc
