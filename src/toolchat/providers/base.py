"""Model endpoint protocol."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from toolchat.types.config import AIConfig
from toolchat.types.messages import ChatMessage
from toolchat.types.tools import ToolDefinition


@runtime_checkable
class ModelEndpoint(Protocol):
    """Produces the next assistant turn for a transcript."""

    async def generate(
        self,
        model_config: AIConfig,
        transcript: Sequence[ChatMessage],
        tools: Sequence[ToolDefinition],
    ) -> ChatMessage:
        """Return one assistant message, possibly carrying tool calls.

        *tools* may be empty, in which case the model must answer in text.
        Failures raise :class:`~toolchat.errors.GenerationError`.
        """
        ...
