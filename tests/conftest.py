"""Test fixtures: a scripted model endpoint and in-memory MCP providers."""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import pytest
from mcp.types import CallToolResult, ListToolsResult, TextContent, Tool

from toolchat.errors import ConnectFailureError
from toolchat.mcp.session import ProviderSession
from toolchat.observability.metrics import reset_instruments
from toolchat.types.config import AIConfig, ToolProviderConfig, TransportKind
from toolchat.types.messages import ChatMessage, ToolCall
from toolchat.types.tools import ToolDefinition

# ─── MCP fakes ────────────────────────────────────────────────


def make_tool(name: str, description: str = "", schema: dict[str, Any] | None = None) -> Tool:
    """A real ``mcp.types.Tool``; ``schema={}`` simulates a provider with no schema."""
    if schema is None:
        schema = {"type": "object", "properties": {"q": {"type": "string"}}}
    return Tool(name=name, description=description or None, inputSchema=schema)


def text_result(text: str, *, is_error: bool = False) -> CallToolResult:
    return CallToolResult(content=[TextContent(type="text", text=text)], isError=is_error)


# A scripted outcome: a result, an exception to raise, or an async callable.
Outcome = CallToolResult | Exception | Callable[[dict[str, Any]], Awaitable[CallToolResult]]


class FakeMcpClient:
    """Stands in for ``mcp.ClientSession``: paginated ``list_tools`` + scripted ``call_tool``.

    Usage:
        client = FakeMcpClient([make_tool("search")])
        client.script("search", RuntimeError("boom"), text_result("ok"))
    """

    def __init__(
        self,
        tools: Sequence[Tool] = (),
        *,
        pages: Sequence[Sequence[Tool]] | None = None,
        list_error: Exception | None = None,
    ):
        self.pages = [list(p) for p in pages] if pages is not None else [list(tools)]
        self.list_error = list_error
        self.cursors: list[str | None] = []
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._scripts: dict[str, list[Outcome]] = {}

    def script(self, tool_name: str, *outcomes: Outcome) -> None:
        """Queue outcomes for *tool_name*; the last one repeats."""
        self._scripts[tool_name] = list(outcomes)

    async def list_tools(self, cursor: str | None = None) -> ListToolsResult:
        self.cursors.append(cursor)
        if self.list_error is not None:
            raise self.list_error
        index = int(cursor) if cursor else 0
        next_cursor = str(index + 1) if index + 1 < len(self.pages) else None
        return ListToolsResult(tools=self.pages[index], nextCursor=next_cursor)

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> CallToolResult:
        args = arguments or {}
        self.calls.append((name, args))
        script = self._scripts.get(name)
        if not script:
            return text_result(f"{name} ok")
        outcome = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return await outcome(args)
        return outcome


class FakeConnection:
    """Satisfies the session's ``Connection`` protocol."""

    def __init__(self, client: FakeMcpClient):
        self._client = client
        self.close_count = 0

    @property
    def client(self) -> FakeMcpClient:
        return self._client

    async def aclose(self) -> None:
        self.close_count += 1


HTTP_CONFIG = ToolProviderConfig(transport=TransportKind.STREAMABLE_HTTP, url="http://tools.test/mcp")


def make_session(
    name: str = "search",
    client: FakeMcpClient | None = None,
    *,
    clock: Callable[[], float] | None = None,
) -> ProviderSession:
    connection = FakeConnection(client or FakeMcpClient())
    if clock is None:
        return ProviderSession(name, HTTP_CONFIG, connection)
    return ProviderSession(name, HTTP_CONFIG, connection, clock=clock)


class FakeConnector:
    """Registry connector that hands out sessions over :class:`FakeMcpClient`.

    Names listed in *unreachable* fail like a dead server would.
    """

    def __init__(self, clients: dict[str, FakeMcpClient], unreachable: Sequence[str] = ()):
        self.clients = clients
        self.unreachable = set(unreachable)
        self.sessions: dict[str, list[ProviderSession]] = {}

    async def __call__(self, name: str, config: ToolProviderConfig) -> ProviderSession:
        if name in self.unreachable:
            raise ConnectFailureError(name, "connect failed: ConnectError: connection refused")
        session = ProviderSession(name, config, FakeConnection(self.clients[name]))
        self.sessions.setdefault(name, []).append(session)
        return session


async def no_sleep(_delay: float) -> None:
    return None


class SleepRecorder:
    """Async ``sleep`` replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ─── Model endpoint fake ──────────────────────────────────────


@dataclass
class MockTurn:
    """A scripted model turn.

    Each tool call: ``{"id": "c1", "name": "search", "args": {...}}``; use
    ``"raw"`` instead of ``"args"`` to send a literal argument string.
    """

    text: str | None = None
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    error: Exception | None = None


@dataclass
class GenerateCall:
    model_config: AIConfig
    transcript: list[ChatMessage]
    tools: list[ToolDefinition]


class MockEndpoint:
    """A deterministic model endpoint.

    Usage:
        endpoint = MockEndpoint([
            MockTurn(tool_calls=[{"id": "c1", "name": "search", "args": {"q": "x"}}]),
            MockTurn(text="Here is what I found."),
        ])
    """

    def __init__(self, turns: Sequence[MockTurn], *, repeat_last: bool = False):
        self._turns = list(turns)
        self._index = 0
        self._repeat_last = repeat_last
        self.calls: list[GenerateCall] = []

    async def generate(
        self,
        model_config: AIConfig,
        transcript: Sequence[ChatMessage],
        tools: Sequence[ToolDefinition],
    ) -> ChatMessage:
        self.calls.append(GenerateCall(model_config, list(transcript), list(tools)))
        if self._index < len(self._turns):
            turn = self._turns[self._index]
            self._index += 1
        elif self._repeat_last and self._turns:
            turn = self._turns[-1]
        else:
            turn = MockTurn(text="(no more turns)")

        if turn.error is not None:
            raise turn.error
        calls = tuple(
            ToolCall(
                id=tc["id"],
                tool_name=tc["name"],
                arguments_json=tc["raw"] if "raw" in tc else json.dumps(tc.get("args", {})),
            )
            for tc in turn.tool_calls
        )
        return ChatMessage.assistant(turn.text, calls)


# ─── Fixtures ─────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _fresh_metrics():
    reset_instruments()
    yield
    reset_instruments()


@pytest.fixture
def ai_config() -> AIConfig:
    return AIConfig(api_key="sk-test", model="mock-model", default_prompt="You are helpful.")


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()
