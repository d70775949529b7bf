"""A live, owned connection to one tool provider plus its health bookkeeping."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

from toolchat.errors import SessionClosedError, ToolExecutionError
from toolchat.types.config import ToolProviderConfig
from toolchat.types.tools import EMPTY_OBJECT_SCHEMA, ToolDefinition

logger = logging.getLogger(__name__)

UNHEALTHY_THRESHOLD = 5


class Connection(Protocol):
    """What a session needs from the connection it owns."""

    @property
    def client(self) -> Any:
        """An initialized MCP client session (``list_tools`` / ``call_tool``)."""
        ...

    async def aclose(self) -> None:
        ...


class ProviderSession:
    """One provider connection.

    ``last_used_at``, ``consecutive_failures`` and ``closed`` change only under
    the session's own lock. Calls themselves are not serialized here; the
    connection multiplexes concurrent requests.
    """

    def __init__(
        self,
        name: str,
        config: ToolProviderConfig,
        connection: Connection,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.config = config
        self._connection = connection
        self._clock = clock
        self._lock = asyncio.Lock()
        self.last_used_at = clock()
        self.consecutive_failures = 0
        self.closed = False

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return (
            f"ProviderSession({self.name!r}, {state}, "
            f"failures={self.consecutive_failures})"
        )

    async def discover(self, timeout: float) -> list[ToolDefinition]:
        """List every tool the provider exposes, following pagination cursors."""
        return await asyncio.wait_for(self._list_all_tools(), timeout=timeout)

    async def _list_all_tools(self) -> list[ToolDefinition]:
        client = self._connection.client
        tools: list[ToolDefinition] = []
        cursor: str | None = None
        while True:
            if cursor is None:
                result = await client.list_tools()
            else:
                result = await client.list_tools(cursor=cursor)
            for tool in result.tools:
                schema = tool.inputSchema if tool.inputSchema else dict(EMPTY_OBJECT_SCHEMA)
                tools.append(ToolDefinition(
                    name=tool.name,
                    description=tool.description or f"Tool from {self.name}",
                    parameter_schema=dict(schema),
                ))
                logger.debug("Tool discovered: %s (server=%s)", tool.name, self.name)
            cursor = getattr(result, "nextCursor", None)
            if not cursor:
                return tools

    async def request(self, tool_name: str, arguments: dict[str, Any]) -> str:
        """Issue one ``tools/call``. No retry, no deadline; see the pipeline."""
        if self.closed:
            raise SessionClosedError(tool_name, self.name)
        result = await self._connection.client.call_tool(tool_name, arguments)
        text = "".join(
            item.text for item in result.content
            if getattr(item, "type", None) == "text"
        )
        if getattr(result, "isError", False):
            raise ToolExecutionError(tool_name, text or "tool reported an error")
        return text

    async def record_success(self) -> None:
        async with self._lock:
            self.last_used_at = self._clock()
            self.consecutive_failures = 0

    async def record_failure(self) -> int:
        async with self._lock:
            self.consecutive_failures += 1
            return self.consecutive_failures

    async def is_healthy(self, threshold: int = UNHEALTHY_THRESHOLD) -> bool:
        async with self._lock:
            return not self.closed and self.consecutive_failures < threshold

    async def close(self) -> bool:
        """Mark closed and tear the connection down. False if already closed."""
        async with self._lock:
            if self.closed:
                return False
            self.closed = True
        await self._connection.aclose()
        logger.info("Closed MCP session: %s", self.name)
        return True
