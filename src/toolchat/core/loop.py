"""The conversation loop: model -> tool calls -> model -> ... -> final answer."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Sequence
from typing import Any

from toolchat.errors import (
    ArgumentParseError,
    GenerationError,
    IterationsExceededError,
    ToolError,
)
from toolchat.mcp.registry import SessionRegistry
from toolchat.observability.metrics import record_iterations
from toolchat.providers.base import ModelEndpoint
from toolchat.types.config import AIConfig
from toolchat.types.messages import ChatMessage, ConversationResult, ToolCall

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 5


def parse_arguments(call: ToolCall) -> dict[str, Any]:
    """Decode a tool call's arguments into a JSON object.

    An empty argument string means no arguments.

    Raises:
        ArgumentParseError: Not valid JSON, or valid JSON that is not an object.
    """
    raw = (call.arguments_json or "").strip()
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ArgumentParseError(call.id, f"Error parsing arguments: {exc}") from exc
    if not isinstance(value, dict):
        raise ArgumentParseError(
            call.id,
            f"Error parsing arguments: expected a JSON object, got {type(value).__name__}",
        )
    return value


def formatting_prompt(answer: str, instruction: str) -> str:
    return f"{answer}\n\nRewrite the reply above according to these instructions: {instruction}"


class ConversationLoop:
    """Bounded generate/invoke loop over one transcript.

    Orchestrates: transcript -> model -> tool calls -> model -> ... -> answer.
    Tool failures never abort a run; they are written back as tool messages
    so the model can react. Only :class:`~toolchat.errors.ConversationError`
    subclasses escape :meth:`run`.
    """

    def __init__(
        self,
        endpoint: ModelEndpoint,
        registry: SessionRegistry,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ):
        self._endpoint = endpoint
        self._registry = registry
        self._max_iterations = (
            max_iterations if max_iterations > 0 else DEFAULT_MAX_ITERATIONS
        )

    async def run(
        self,
        transcript: Sequence[ChatMessage],
        model_config: AIConfig,
        *,
        max_iterations: int | None = None,
        formatting_instruction: str = "",
    ) -> ConversationResult:
        """Drive the loop until the model answers without tool calls.

        *transcript* is copied; the caller's sequence is not modified.

        Raises:
            GenerationError: The model endpoint failed.
            IterationsExceededError: No final answer within the bound.
        """
        limit = max_iterations if max_iterations and max_iterations > 0 else self._max_iterations
        messages = list(transcript)
        tool_call_count = 0

        for iteration in range(1, limit + 1):
            reply = await self._generate(model_config, messages, iteration)
            messages.append(reply)

            if not reply.has_tool_calls:
                answer = reply.content or ""
                record_iterations(iteration)
                logger.info(
                    "Conversation finished after %d iteration(s), %d tool call(s)",
                    iteration, tool_call_count,
                )
                text, formatted = await self._format(model_config, answer, formatting_instruction)
                return ConversationResult(
                    text=text,
                    transcript=messages,
                    iterations=iteration,
                    tool_calls=tool_call_count,
                    formatted=formatted,
                )

            logger.info(
                "Iteration %d: model requested %d tool call(s): %s",
                iteration, len(reply.tool_calls),
                ", ".join(call.tool_name for call in reply.tool_calls),
            )
            results = await asyncio.gather(
                *(self._execute(call) for call in reply.tool_calls)
            )
            tool_call_count += len(reply.tool_calls)
            for call, content in zip(reply.tool_calls, results):
                messages.append(ChatMessage.tool(call.id, content))

        record_iterations(limit, outcome="exhausted")
        logger.warning("Conversation exceeded %d iterations", limit)
        raise IterationsExceededError(limit)

    async def _generate(
        self, model_config: AIConfig, messages: list[ChatMessage], iteration: int,
    ) -> ChatMessage:
        tools = self._registry.list_tools()
        logger.debug(
            "Iteration %d: generating with %d messages and %d tools",
            iteration, len(messages), len(tools),
        )
        try:
            return await self._endpoint.generate(model_config, messages, tools)
        except GenerationError:
            raise
        except Exception as exc:
            raise GenerationError(f"model endpoint failed: {exc}") from exc

    async def _execute(self, call: ToolCall) -> str:
        """Run one tool call and return the text for its tool message."""
        try:
            arguments = parse_arguments(call)
        except ArgumentParseError as exc:
            logger.warning("Bad arguments for %s (%s): %s", call.tool_name, call.id, exc)
            return str(exc)

        try:
            result = await self._registry.call_tool(call.tool_name, arguments)
        except ToolError as exc:
            logger.warning("Tool %s failed: %s", call.tool_name, exc)
            return f"Error executing tool: {exc}"
        logger.debug("Tool %s returned %d chars", call.tool_name, len(result))
        return result

    async def _format(
        self, model_config: AIConfig, answer: str, instruction: str,
    ) -> tuple[str, bool]:
        """Restyle *answer* with one tool-free generation. Best effort."""
        if not instruction or not answer:
            return answer, False
        prompt = [ChatMessage.user(formatting_prompt(answer, instruction))]
        try:
            reply = await self._endpoint.generate(model_config, prompt, [])
        except Exception as exc:
            logger.warning("Formatting pass failed, using unformatted answer: %s", exc)
            return answer, False
        if not reply.content:
            return answer, False
        return reply.content, True
