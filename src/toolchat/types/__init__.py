"""Type definitions for toolchat."""

from toolchat.types.config import (
    AIConfig,
    AppConfig,
    BroadcastConfig,
    Persona,
    ProxyConfig,
    ToolProviderConfig,
    TransportKind,
)
from toolchat.types.messages import ChatMessage, ConversationResult, ToolCall
from toolchat.types.tools import EMPTY_OBJECT_SCHEMA, ToolDefinition

__all__ = [
    "AIConfig",
    "AppConfig",
    "BroadcastConfig",
    "ChatMessage",
    "ConversationResult",
    "EMPTY_OBJECT_SCHEMA",
    "Persona",
    "ProxyConfig",
    "ToolCall",
    "ToolDefinition",
    "ToolProviderConfig",
    "TransportKind",
]
