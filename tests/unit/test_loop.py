"""Tests for the conversation loop using MockEndpoint and in-memory providers."""

import asyncio

import pytest

from tests.conftest import (
    HTTP_CONFIG,
    FakeConnector,
    FakeMcpClient,
    MockEndpoint,
    MockTurn,
    make_tool,
    no_sleep,
    text_result,
)
from toolchat.core.loop import ConversationLoop, formatting_prompt, parse_arguments
from toolchat.errors import ArgumentParseError, GenerationError, IterationsExceededError
from toolchat.mcp.registry import SessionRegistry
from toolchat.types.messages import ChatMessage, ToolCall

SEED = [ChatMessage.system("You are helpful."), ChatMessage.user("What's the weather?")]


async def _registry(clients: dict[str, FakeMcpClient] | None = None) -> SessionRegistry:
    clients = clients or {"weather": FakeMcpClient([make_tool("forecast"), make_tool("alerts")])}
    registry = SessionRegistry(connector=FakeConnector(clients), sleep=no_sleep)
    await registry.connect_all({name: HTTP_CONFIG for name in clients})
    return registry


class TestParseArguments:
    def test_object(self):
        assert parse_arguments(ToolCall("c1", "t", '{"city": "Paris"}')) == {"city": "Paris"}

    def test_empty_string_is_no_arguments(self):
        assert parse_arguments(ToolCall("c1", "t", "")) == {}
        assert parse_arguments(ToolCall("c1", "t", "   ")) == {}

    def test_invalid_json(self):
        with pytest.raises(ArgumentParseError, match="Error parsing arguments") as exc_info:
            parse_arguments(ToolCall("c9", "t", "{not json"))
        assert exc_info.value.tool_call_id == "c9"

    def test_non_object(self):
        with pytest.raises(ArgumentParseError, match="expected a JSON object, got list"):
            parse_arguments(ToolCall("c1", "t", "[1, 2]"))


class TestConversationLoop:
    @pytest.mark.asyncio
    async def test_no_tool_calls_finishes_in_one_iteration(self, ai_config):
        endpoint = MockEndpoint([MockTurn(text="It is sunny.")])
        loop = ConversationLoop(endpoint, await _registry())

        result = await loop.run(SEED, ai_config)

        assert result.text == "It is sunny."
        assert result.iterations == 1
        assert result.tool_calls == 0
        assert result.formatted is False
        assert len(endpoint.calls) == 1

    @pytest.mark.asyncio
    async def test_tool_then_answer_transcript_shape(self, ai_config):
        clients = {"weather": FakeMcpClient([make_tool("forecast")])}
        clients["weather"].script("forecast", text_result("18C, clear"))
        endpoint = MockEndpoint([
            MockTurn(tool_calls=[{"id": "call_1", "name": "forecast", "args": {"city": "Paris"}}]),
            MockTurn(text="18C and clear in Paris."),
        ])
        loop = ConversationLoop(endpoint, await _registry(clients))

        result = await loop.run(SEED, ai_config)

        roles = [m.role for m in result.transcript]
        assert roles == ["system", "user", "assistant", "tool", "assistant"]
        assistant, tool_msg = result.transcript[2], result.transcript[3]
        assert len(assistant.tool_calls) == 1
        assert tool_msg.tool_call_id == assistant.tool_calls[0].id == "call_1"
        assert tool_msg.content == "18C, clear"
        assert result.text == "18C and clear in Paris."
        assert result.iterations == 2
        assert result.tool_calls == 1
        assert clients["weather"].calls == [("forecast", {"city": "Paris"})]

    @pytest.mark.asyncio
    async def test_catalog_sent_with_each_generation(self, ai_config):
        endpoint = MockEndpoint([MockTurn(text="ok")])
        loop = ConversationLoop(endpoint, await _registry())

        await loop.run(SEED, ai_config)

        assert [t.name for t in endpoint.calls[0].tools] == ["forecast", "alerts"]
        assert endpoint.calls[0].model_config is ai_config

    @pytest.mark.asyncio
    async def test_caller_transcript_not_modified(self, ai_config):
        seed = list(SEED)
        endpoint = MockEndpoint([
            MockTurn(tool_calls=[{"id": "c1", "name": "forecast", "args": {}}]),
            MockTurn(text="done"),
        ])
        await ConversationLoop(endpoint, await _registry()).run(seed, ai_config)
        assert seed == SEED

    @pytest.mark.asyncio
    async def test_exhaustion_raises(self, ai_config):
        endpoint = MockEndpoint(
            [MockTurn(tool_calls=[{"id": "c", "name": "forecast", "args": {}}])],
            repeat_last=True,
        )
        loop = ConversationLoop(endpoint, await _registry())

        with pytest.raises(IterationsExceededError) as exc_info:
            await loop.run(SEED, ai_config, max_iterations=3)

        assert exc_info.value.max_iterations == 3
        assert len(endpoint.calls) == 3

    @pytest.mark.asyncio
    async def test_non_positive_max_iterations_uses_default(self, ai_config):
        endpoint = MockEndpoint(
            [MockTurn(tool_calls=[{"id": "c", "name": "forecast", "args": {}}])],
            repeat_last=True,
        )
        loop = ConversationLoop(endpoint, await _registry(), max_iterations=0)

        with pytest.raises(IterationsExceededError):
            await loop.run(SEED, ai_config, max_iterations=-1)
        assert len(endpoint.calls) == 5

    @pytest.mark.asyncio
    async def test_bad_arguments_become_tool_message(self, ai_config):
        clients = {"weather": FakeMcpClient([make_tool("forecast")])}
        endpoint = MockEndpoint([
            MockTurn(tool_calls=[{"id": "c1", "name": "forecast", "raw": "{oops"}]),
            MockTurn(text="Sorry, let me try differently."),
        ])
        loop = ConversationLoop(endpoint, await _registry(clients))

        result = await loop.run(SEED, ai_config)

        tool_msg = result.transcript[3]
        assert tool_msg.tool_call_id == "c1"
        assert tool_msg.content.startswith("Error parsing arguments:")
        assert clients["weather"].calls == []
        assert result.text == "Sorry, let me try differently."

    @pytest.mark.asyncio
    async def test_unknown_tool_becomes_tool_message(self, ai_config):
        endpoint = MockEndpoint([
            MockTurn(tool_calls=[{"id": "c1", "name": "teleport", "args": {}}]),
            MockTurn(text="I can't do that."),
        ])
        result = await ConversationLoop(endpoint, await _registry()).run(SEED, ai_config)

        assert result.transcript[3].content == "Error executing tool: tool not found: teleport"
        assert result.text == "I can't do that."

    @pytest.mark.asyncio
    async def test_failed_invocation_becomes_tool_message(self, ai_config):
        clients = {"weather": FakeMcpClient([make_tool("forecast")])}
        clients["weather"].script("forecast", ConnectionError("upstream down"))
        endpoint = MockEndpoint([
            MockTurn(tool_calls=[{"id": "c1", "name": "forecast", "args": {}}]),
            MockTurn(text="The weather service is unavailable."),
        ])
        result = await ConversationLoop(endpoint, await _registry(clients)).run(SEED, ai_config)

        content = result.transcript[3].content
        assert content.startswith("Error executing tool:")
        assert "upstream down" in content
        assert result.text == "The weather service is unavailable."

    @pytest.mark.asyncio
    async def test_results_appended_in_issue_order(self, ai_config):
        clients = {"weather": FakeMcpClient([make_tool("forecast"), make_tool("alerts")])}

        async def slow_forecast(_args):
            await asyncio.sleep(0.02)
            return text_result("forecast result")

        clients["weather"].script("forecast", slow_forecast)
        clients["weather"].script("alerts", text_result("alerts result"))
        endpoint = MockEndpoint([
            MockTurn(tool_calls=[
                {"id": "a", "name": "forecast", "args": {}},
                {"id": "b", "name": "alerts", "args": {}},
            ]),
            MockTurn(text="done"),
        ])
        result = await ConversationLoop(endpoint, await _registry(clients)).run(SEED, ai_config)

        tool_msgs = [m for m in result.transcript if m.role == "tool"]
        assert [(m.tool_call_id, m.content) for m in tool_msgs] == [
            ("a", "forecast result"),
            ("b", "alerts result"),
        ]
        assert result.tool_calls == 2

    @pytest.mark.asyncio
    async def test_generation_error_aborts(self, ai_config):
        endpoint = MockEndpoint([MockTurn(error=RuntimeError("HTTP 500"))])
        loop = ConversationLoop(endpoint, await _registry())

        with pytest.raises(GenerationError, match="HTTP 500"):
            await loop.run(SEED, ai_config)

    @pytest.mark.asyncio
    async def test_generation_error_passthrough(self, ai_config):
        endpoint = MockEndpoint([
            MockTurn(tool_calls=[{"id": "c1", "name": "forecast", "args": {}}]),
            MockTurn(error=GenerationError("rate limited")),
        ])
        with pytest.raises(GenerationError, match="^rate limited$"):
            await ConversationLoop(endpoint, await _registry()).run(SEED, ai_config)


class TestFormattingPass:
    @pytest.mark.asyncio
    async def test_formatting_runs_tool_free_on_single_message(self, ai_config):
        endpoint = MockEndpoint([MockTurn(text="**Sunny**"), MockTurn(text="Sunny")])
        loop = ConversationLoop(endpoint, await _registry())

        result = await loop.run(SEED, ai_config, formatting_instruction="No markdown.")

        assert result.text == "Sunny"
        assert result.formatted is True
        fmt_call = endpoint.calls[1]
        assert fmt_call.tools == []
        assert [m.role for m in fmt_call.transcript] == ["user"]
        assert fmt_call.transcript[0].content == formatting_prompt("**Sunny**", "No markdown.")
        assert [m.role for m in result.transcript] == ["system", "user", "assistant"]

    @pytest.mark.asyncio
    async def test_formatting_failure_returns_unformatted(self, ai_config):
        endpoint = MockEndpoint([MockTurn(text="raw answer"), MockTurn(error=RuntimeError("boom"))])
        result = await ConversationLoop(endpoint, await _registry()).run(
            SEED, ai_config, formatting_instruction="Be brief.",
        )
        assert result.text == "raw answer"
        assert result.formatted is False

    @pytest.mark.asyncio
    async def test_formatting_skipped_for_empty_answer(self, ai_config):
        endpoint = MockEndpoint([MockTurn(text="")])
        result = await ConversationLoop(endpoint, await _registry()).run(
            SEED, ai_config, formatting_instruction="Be brief.",
        )
        assert result.text == ""
        assert len(endpoint.calls) == 1

    @pytest.mark.asyncio
    async def test_no_instruction_no_extra_call(self, ai_config):
        endpoint = MockEndpoint([MockTurn(text="answer")])
        await ConversationLoop(endpoint, await _registry()).run(SEED, ai_config)
        assert len(endpoint.calls) == 1
