"""Multi-provider session registry: sessions, merged tool catalog, tool index."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from toolchat.errors import (
    ConnectFailureError,
    SessionClosedError,
    ToolNotFoundError,
)
from toolchat.mcp.client import McpConnection
from toolchat.mcp.invocation import InvocationPolicy, invoke_tool
from toolchat.mcp.session import UNHEALTHY_THRESHOLD, ProviderSession
from toolchat.mcp.transport import bind_transport
from toolchat.types.config import ProxyConfig, ToolProviderConfig
from toolchat.types.tools import ToolDefinition

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 15.0
DISCOVERY_TIMEOUT = 10.0

Connector = Callable[[str, ToolProviderConfig], Awaitable[ProviderSession]]


class SessionRegistry:
    """Owns every provider session and the tool-name index over them.

    Writers (:meth:`connect_all`, :meth:`disconnect`, :meth:`close_all`) are
    serialized by one lock and publish a freshly built index and catalog in a
    single assignment, so readers never wait and never see a partial update.
    """

    def __init__(
        self,
        proxy: ProxyConfig | None = None,
        *,
        connector: Connector | None = None,
        policy: InvocationPolicy | None = None,
        connect_timeout: float = CONNECT_TIMEOUT,
        discovery_timeout: float = DISCOVERY_TIMEOUT,
        unhealthy_threshold: int = UNHEALTHY_THRESHOLD,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._proxy = proxy or ProxyConfig()
        self._connector = connector or self._open_session
        self._policy = policy
        self._connect_timeout = connect_timeout
        self._discovery_timeout = discovery_timeout
        self._threshold = unhealthy_threshold
        self._sleep = sleep
        self._write_lock = asyncio.Lock()

        # Registration order matters: later sessions win tool-name collisions.
        self._sessions: dict[str, ProviderSession] = {}
        self._tools_by_session: dict[str, list[ToolDefinition]] = {}
        self._index: dict[str, ProviderSession] = {}
        self._catalog: tuple[ToolDefinition, ...] = ()
        # Tool names whose owning session was shut down -> provider name.
        # Bounded by the names providers have served; pruned on reconnect.
        self._retired: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def _open_session(self, name: str, config: ToolProviderConfig) -> ProviderSession:
        binding = bind_transport(name, config, self._proxy)
        connection = McpConnection(name, binding)
        await connection.open(self._connect_timeout)
        return ProviderSession(name, config, connection)

    async def connect_server(
        self, name: str, config: ToolProviderConfig,
    ) -> tuple[ProviderSession, list[ToolDefinition]]:
        """Connect one provider and discover its tools without registering them.

        Raises:
            ConnectFailureError: Unreachable, handshake failed, or discovery failed.
        """
        logger.info(
            "Connecting to MCP server '%s' (type=%s, use_proxy=%s)",
            name, config.transport.value, config.use_proxy,
        )
        try:
            session = await self._connector(name, config)
        except ConnectFailureError:
            raise
        except Exception as exc:
            raise ConnectFailureError(name, f"connect failed: {exc}") from exc

        try:
            tools = await session.discover(self._discovery_timeout)
        except Exception as exc:
            await session.close()
            reason = "timed out" if isinstance(exc, TimeoutError) else str(exc)
            raise ConnectFailureError(name, f"tool discovery failed: {reason}") from exc
        return session, tools

    async def connect_all(self, configs: Mapping[str, ToolProviderConfig]) -> dict[str, bool]:
        """Connect every configured provider independently.

        A provider that fails is logged and skipped; it contributes no tools
        until the next call. Returns whether each provider connected.
        """
        async with self._write_lock:
            names = list(configs)
            outcomes = await asyncio.gather(
                *(self.connect_server(name, configs[name]) for name in names),
                return_exceptions=True,
            )

            status: dict[str, bool] = {}
            replaced: list[ProviderSession] = []
            sessions = dict(self._sessions)
            tools_by_session = dict(self._tools_by_session)
            for name, outcome in zip(names, outcomes):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    logger.error("Failed to connect to MCP server '%s': %s", name, outcome)
                    status[name] = False
                    continue
                session, tools = outcome
                previous = sessions.pop(name, None)
                if previous is not None:
                    replaced.append(previous)
                sessions[name] = session
                tools_by_session[name] = tools
                self._forget_retired(name)
                status[name] = True
                logger.info("Connected to MCP server '%s' with %d tools", name, len(tools))

            self._publish(sessions, tools_by_session)

        for previous in replaced:
            await self._close_quietly(previous)
        return status

    async def disconnect(self, name: str) -> bool:
        """Close one provider's session and drop its tools. False if unknown."""
        async with self._write_lock:
            session = self._sessions.get(name)
            if session is None:
                return False
            sessions = {n: s for n, s in self._sessions.items() if n != name}
            tools_by_session = {n: t for n, t in self._tools_by_session.items() if n != name}
            self._retire(session)
            self._publish(sessions, tools_by_session)
            await self._close_quietly(session)
        return True

    async def close_all(self) -> None:
        """Close every open session and clear the catalog. Idempotent."""
        async with self._write_lock:
            sessions = list(self._sessions.values())
            if sessions:
                logger.info("Closing all MCP sessions (%d)", len(sessions))
            for session in sessions:
                self._retire(session)
            self._publish({}, {})
            await asyncio.gather(*(self._close_quietly(s) for s in sessions))

    def _retire(self, session: ProviderSession) -> None:
        for tool_name, owner in self._index.items():
            if owner is session:
                self._retired[tool_name] = session.name

    def _forget_retired(self, provider: str) -> None:
        # A reconnected provider replaces whatever it served before closing.
        self._retired = {t: p for t, p in self._retired.items() if p != provider}

    def _publish(
        self,
        sessions: dict[str, ProviderSession],
        tools_by_session: dict[str, list[ToolDefinition]],
    ) -> None:
        """Rebuild index and catalog from *sessions* and swap them in."""
        index: dict[str, ProviderSession] = {}
        catalog: dict[str, ToolDefinition] = {}
        for name, session in sessions.items():
            for tool in tools_by_session.get(name, []):
                owner = index.get(tool.name)
                if owner is not None and owner is not session:
                    logger.warning(
                        "Tool '%s' from '%s' shadows the one from '%s'",
                        tool.name, name, owner.name,
                    )
                index[tool.name] = session
                catalog.pop(tool.name, None)
                catalog[tool.name] = tool

        for tool_name in index:
            self._retired.pop(tool_name, None)
        self._sessions = sessions
        self._tools_by_session = tools_by_session
        self._index = index
        self._catalog = tuple(catalog.values())

    async def _close_quietly(self, session: ProviderSession) -> None:
        try:
            await session.close()
        except Exception as exc:
            logger.warning("Error closing MCP session '%s': %s", session.name, exc)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_tools(self) -> list[ToolDefinition]:
        """The merged catalog across all connected providers."""
        return list(self._catalog)

    def lookup(self, tool_name: str) -> ProviderSession:
        """Resolve the session that owns *tool_name*.

        Raises:
            ToolNotFoundError: No provider ever registered the name.
            SessionClosedError: The owning provider was shut down.
        """
        session = self._index.get(tool_name)
        if session is None:
            provider = self._retired.get(tool_name)
            if provider is not None:
                raise SessionClosedError(tool_name, provider)
            raise ToolNotFoundError(tool_name)
        if session.closed:
            raise SessionClosedError(tool_name, session.name)
        return session

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> str:
        """Invoke a tool on its owning provider through the invocation pipeline."""
        session = self.lookup(tool_name)
        return await invoke_tool(
            session, tool_name, arguments, self._policy, sleep=self._sleep,
        )

    async def health_check(self) -> dict[str, bool]:
        """Provider name -> open and below the consecutive-failure threshold."""
        return {
            name: await session.is_healthy(self._threshold)
            for name, session in self._sessions.items()
        }

    def session(self, name: str) -> ProviderSession | None:
        return self._sessions.get(name)

    def owner_of(self, tool_name: str) -> str | None:
        session = self._index.get(tool_name)
        return session.name if session is not None else None

    @property
    def provider_names(self) -> list[str]:
        return list(self._sessions)

    @property
    def server_count(self) -> int:
        return len(self._sessions)

    @property
    def tool_count(self) -> int:
        return len(self._catalog)
