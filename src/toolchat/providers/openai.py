"""OpenAI-compatible chat completion endpoint.

Works against OpenAI itself and any server that speaks the same
``/chat/completions`` protocol (Ollama ``http://localhost:11434/v1``, Groq,
OpenRouter, DeepSeek, ...). The base URL and key come from the
:class:`~toolchat.types.config.AIConfig` passed on each call, so a single
endpoint instance serves every per-user override.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any

from openai import AsyncOpenAI, OpenAIError

from toolchat.errors import GenerationError
from toolchat.observability.metrics import timed_generation
from toolchat.types.config import AIConfig
from toolchat.types.messages import ChatMessage, ToolCall
from toolchat.types.tools import ToolDefinition

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 120.0
_COMPLETIONS_SUFFIX = "/chat/completions"


def normalize_base_url(url: str) -> str:
    """Strip a trailing ``/chat/completions`` (and slashes) from *url*.

    Users often paste the full completions URL; the SDK wants the API root.
    """
    url = url.strip().rstrip("/")
    if url.endswith(_COMPLETIONS_SUFFIX):
        url = url[: -len(_COMPLETIONS_SUFFIX)].rstrip("/")
    return url


class OpenAICompatibleEndpoint:
    """Model endpoint backed by the official ``openai`` async SDK.

    Parameters
    ----------
    timeout:
        Per-request timeout in seconds.
    max_retries:
        SDK-level retries for transient HTTP failures. Defaults to 0; the
        conversation deadline bounds the whole run instead.
    """

    def __init__(self, *, timeout: float = REQUEST_TIMEOUT, max_retries: int = 0) -> None:
        self._timeout = timeout
        self._max_retries = max_retries
        self._clients: dict[tuple[str, str], AsyncOpenAI] = {}

    def _client_for(self, model_config: AIConfig) -> AsyncOpenAI:
        base_url = normalize_base_url(model_config.base_url)
        key = (base_url, model_config.api_key)
        client = self._clients.get(key)
        if client is None:
            client = AsyncOpenAI(
                api_key=model_config.api_key,
                base_url=base_url or None,
                timeout=self._timeout,
                max_retries=self._max_retries,
            )
            self._clients[key] = client
        return client

    async def generate(
        self,
        model_config: AIConfig,
        transcript: Sequence[ChatMessage],
        tools: Sequence[ToolDefinition],
    ) -> ChatMessage:
        """Send *transcript* and *tools* and convert the first choice back.

        Raises
        ------
        GenerationError
            On any SDK error or an empty response.
        """
        kwargs: dict[str, Any] = {}
        openai_tools = to_openai_tools(tools)
        if openai_tools:
            kwargs["tools"] = openai_tools

        try:
            client = self._client_for(model_config)
            with timed_generation(model=model_config.model):
                response = await client.chat.completions.create(
                    model=model_config.model,
                    messages=to_openai_messages(transcript),  # type: ignore[arg-type]
                    **kwargs,
                )
        except OpenAIError as exc:
            raise GenerationError(f"model request failed: {exc}") from exc

        if not response.choices:
            raise GenerationError("model returned no choices")
        message = from_openai_message(response.choices[0].message)
        logger.debug(
            "Generation finished: model=%s tool_calls=%d",
            model_config.model, len(message.tool_calls),
        )
        return message

    async def aclose(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.close()


# ------------------------------------------------------------------
# Conversion helpers
# ------------------------------------------------------------------


def to_openai_messages(transcript: Sequence[ChatMessage]) -> list[dict[str, Any]]:
    """Convert transcript messages to the OpenAI messages array."""
    result: list[dict[str, Any]] = []
    for msg in transcript:
        if msg.role == "tool":
            result.append({
                "role": "tool",
                "tool_call_id": msg.tool_call_id or "",
                "content": msg.content or "",
            })
        elif msg.role == "assistant":
            entry: dict[str, Any] = {"role": "assistant", "content": msg.content}
            if msg.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {
                            "name": call.tool_name,
                            "arguments": call.arguments_json,
                        },
                    }
                    for call in msg.tool_calls
                ]
            result.append(entry)
        else:
            result.append({"role": msg.role, "content": msg.content or ""})
    return result


def to_openai_tools(tools: Sequence[ToolDefinition]) -> list[dict[str, Any]]:
    """Wrap each tool in the ``{"type": "function", "function": {...}}`` envelope."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameter_schema,
            },
        }
        for tool in tools
    ]


def from_openai_message(message: Any) -> ChatMessage:
    """Convert an SDK ``ChatCompletionMessage`` to a :class:`ChatMessage`."""
    calls: list[ToolCall] = []
    for tc in getattr(message, "tool_calls", None) or []:
        function = getattr(tc, "function", None)
        if function is None:
            logger.warning("Ignoring non-function tool call %s", getattr(tc, "id", "?"))
            continue
        arguments = function.arguments
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        calls.append(ToolCall(id=tc.id, tool_name=function.name, arguments_json=arguments))
    return ChatMessage.assistant(message.content, tuple(calls))
