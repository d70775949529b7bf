"""Transport bindings: one per way of reaching an MCP tool provider.

A binding is chosen once per provider by :func:`bind_transport` and only knows
how to open the underlying read/write stream pair. Protocol handling
(initialize, list, call) lives on top of it in :mod:`toolchat.mcp.client`.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any

import httpx

from toolchat.errors import ConfigError
from toolchat.types.config import ProxyConfig, ToolProviderConfig, TransportKind

logger = logging.getLogger(__name__)

PROXY_ENV_VARS = ("HTTP_PROXY", "HTTPS_PROXY", "http_proxy", "https_proxy")

_HTTP_TIMEOUT = 30.0
_SSE_READ_TIMEOUT = 300.0

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def expand_env(value: str, environ: Mapping[str, str] | None = None) -> str:
    """Expand ``$VAR`` and ``${VAR}`` references. Unset variables become ""."""
    env = os.environ if environ is None else environ

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(2)
        return env.get(name, "")

    return _ENV_REF.sub(_sub, value)


def build_subprocess_env(
    config: ToolProviderConfig,
    proxy: ProxyConfig,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Environment for a stdio provider.

    Parent environment, then proxy variables if the provider opts in, then the
    provider's own entries (which may override the proxy ones).
    """
    env = dict(os.environ if base_env is None else base_env)
    if config.use_proxy and proxy.url:
        for var in PROXY_ENV_VARS:
            env[var] = proxy.url
    env.update(config.env)
    return env


class StdioBinding:
    """Spawn the provider as a subprocess and talk over its standard pipes."""

    kind = TransportKind.STDIO

    def __init__(self, name: str, config: ToolProviderConfig, proxy: ProxyConfig):
        if not config.command:
            raise ConfigError(f"MCP server '{name}': command is required for stdio transport")
        self.name = name
        self._config = config
        self._proxy = proxy

    def describe(self) -> str:
        return " ".join([self._config.command or "", *self._config.args]).strip()

    @asynccontextmanager
    async def open(self) -> AsyncIterator[tuple[Any, Any]]:
        from mcp import StdioServerParameters
        from mcp.client.stdio import stdio_client

        params = StdioServerParameters(
            command=self._config.command or "",
            args=list(self._config.args),
            env=build_subprocess_env(self._config, self._proxy),
        )
        logger.info(
            "Starting MCP command '%s': %s (env=%d, proxy=%s)",
            self.name, self.describe(), len(self._config.env),
            self._config.use_proxy and bool(self._proxy.url),
        )
        async with stdio_client(params) as (read, write):
            yield read, write


class _HttpBinding:
    """Shared httpx client construction for the network transports."""

    kind: TransportKind

    def __init__(self, name: str, config: ToolProviderConfig, proxy: ProxyConfig):
        if not config.url:
            raise ConfigError(
                f"MCP server '{name}': url is required for {config.transport.value} transport"
            )
        self.name = name
        self._config = config
        self._proxy_url = proxy.url if config.use_proxy and proxy.url else None

    @property
    def url(self) -> str:
        return self._config.url or ""

    @property
    def proxy_url(self) -> str | None:
        return self._proxy_url

    def describe(self) -> str:
        return self.url

    async def _inject_headers(self, request: httpx.Request) -> None:
        # Expanded per request so rotated credentials in the environment apply.
        for key, value in self._config.headers.items():
            request.headers[key] = expand_env(value)

    def client_factory(
        self,
        headers: dict[str, str] | None = None,
        timeout: httpx.Timeout | None = None,
        auth: httpx.Auth | None = None,
    ) -> httpx.AsyncClient:
        """Build the httpx client the MCP SDK uses for this provider."""
        kwargs: dict[str, Any] = {
            "follow_redirects": True,
            "timeout": timeout or httpx.Timeout(_HTTP_TIMEOUT, read=_SSE_READ_TIMEOUT),
            "headers": headers,
            "auth": auth,
            "event_hooks": {"request": [self._inject_headers]},
        }
        if self._proxy_url:
            kwargs["proxy"] = self._proxy_url
        else:
            # Ignore HTTP(S)_PROXY from the environment as well.
            kwargs["trust_env"] = False
        return httpx.AsyncClient(**kwargs)


class StreamableHTTPBinding(_HttpBinding):
    """Point-to-point streamable HTTP transport."""

    kind = TransportKind.STREAMABLE_HTTP

    @asynccontextmanager
    async def open(self) -> AsyncIterator[tuple[Any, Any]]:
        from mcp.client.streamable_http import streamablehttp_client

        logger.info(
            "Opening streamable HTTP transport for '%s' at %s (proxy=%s)",
            self.name, self.url, self._proxy_url or "none",
        )
        async with streamablehttp_client(
            self.url, httpx_client_factory=self.client_factory,
        ) as (read, write, _get_session_id):
            yield read, write


class SSEBinding(_HttpBinding):
    """Server-push event stream transport."""

    kind = TransportKind.SSE

    @asynccontextmanager
    async def open(self) -> AsyncIterator[tuple[Any, Any]]:
        from mcp.client.sse import sse_client

        logger.info(
            "Opening SSE transport for '%s' at %s (proxy=%s)",
            self.name, self.url, self._proxy_url or "none",
        )
        async with sse_client(
            self.url,
            timeout=_HTTP_TIMEOUT,
            sse_read_timeout=_SSE_READ_TIMEOUT,
            httpx_client_factory=self.client_factory,
        ) as (read, write):
            yield read, write


TransportBinding = StdioBinding | StreamableHTTPBinding | SSEBinding

_BINDINGS: dict[TransportKind, type[StdioBinding | StreamableHTTPBinding | SSEBinding]] = {
    TransportKind.STDIO: StdioBinding,
    TransportKind.STREAMABLE_HTTP: StreamableHTTPBinding,
    TransportKind.SSE: SSEBinding,
}


def bind_transport(
    name: str, config: ToolProviderConfig, proxy: ProxyConfig | None = None,
) -> TransportBinding:
    """Select and construct the binding for a provider's transport kind."""
    return _BINDINGS[config.transport](name, config, proxy or ProxyConfig())
