"""Low-level MCP connection wrapping the official mcp SDK."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from toolchat.errors import ConnectFailureError
from toolchat.mcp.transport import TransportBinding

logger = logging.getLogger(__name__)

CLIENT_NAME = "toolchat"
CLIENT_VERSION = "0.3.0"


class McpConnection:
    """Holds one MCP client session open on a dedicated runner task.

    The SDK's transport and session contexts are anyio scopes that must be
    exited by the task that entered them, so the runner owns both and the
    public methods only signal it.
    """

    def __init__(self, name: str, binding: TransportBinding):
        self.name = name
        self._binding = binding
        self._client: Any = None
        self._ready = asyncio.Event()
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def client(self) -> Any:
        """The initialized ``mcp.ClientSession``."""
        if self._client is None:
            raise RuntimeError(f"MCP connection '{self.name}' is not open")
        return self._client

    @property
    def alive(self) -> bool:
        return self._task is not None and not self._task.done()

    async def open(self, timeout: float) -> None:
        """Connect and complete the ``initialize`` handshake within *timeout*."""
        self._task = asyncio.create_task(self._run(), name=f"mcp-{self.name}")
        ready = asyncio.create_task(self._ready.wait())
        done, _ = await asyncio.wait(
            {ready, self._task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
        )
        if ready in done:
            return

        ready.cancel()
        if self._task in done:
            exc = self._task.exception()
            raise ConnectFailureError(
                self.name, f"connect failed: {_describe(exc)}",
            ) from exc
        await self._cancel_runner()
        raise ConnectFailureError(self.name, f"connect timed out after {timeout:g}s")

    async def _run(self) -> None:
        from mcp import ClientSession
        from mcp.types import Implementation

        async with self._binding.open() as (read, write):
            async with ClientSession(
                read, write,
                client_info=Implementation(name=CLIENT_NAME, version=CLIENT_VERSION),
            ) as session:
                await session.initialize()
                self._client = session
                self._ready.set()
                await self._stop.wait()

    async def aclose(self, timeout: float = 5.0) -> None:
        """Ask the runner to leave its contexts; cancel it if it does not."""
        self._stop.set()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except TimeoutError:
            logger.warning("MCP connection '%s' did not close in %gs, cancelling", self.name, timeout)
            await self._cancel_runner()
        except Exception as exc:
            logger.warning("MCP connection '%s' closed with error: %s", self.name, _describe(exc))
        finally:
            self._client = None

    async def _cancel_runner(self) -> None:
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            logger.debug("MCP runner '%s' raised while cancelling: %s", self.name, _describe(exc))


def _describe(exc: BaseException | None) -> str:
    """Flatten anyio exception groups into a readable message."""
    if exc is None:
        return "unknown error"
    if isinstance(exc, BaseExceptionGroup) and exc.exceptions:
        return "; ".join(_describe(e) for e in exc.exceptions)
    return f"{type(exc).__name__}: {exc}"
