"""toolchat: a chat engine whose model can call tools on MCP servers.

Usage:
    import asyncio
    from toolchat import Engine, load_config

    async def main():
        async with Engine(load_config("config.yaml")) as engine:
            print(await engine.chat("cli", "local", "What's new in Python?"))

    asyncio.run(main())
"""

from toolchat.core.broadcast import BroadcastDriver, next_fire_at, parse_fire_time
from toolchat.core.config import load_config
from toolchat.core.engine import Engine
from toolchat.core.loop import ConversationLoop
from toolchat.mcp.registry import SessionRegistry
from toolchat.types.config import AIConfig, AppConfig, ToolProviderConfig, TransportKind
from toolchat.types.messages import ChatMessage, ConversationResult, ToolCall
from toolchat.types.tools import ToolDefinition

__version__ = "0.3.0"

__all__ = [
    "AIConfig",
    "AppConfig",
    "BroadcastDriver",
    "ChatMessage",
    "ConversationLoop",
    "ConversationResult",
    "Engine",
    "SessionRegistry",
    "ToolCall",
    "ToolDefinition",
    "ToolProviderConfig",
    "TransportKind",
    "load_config",
    "next_fire_at",
    "parse_fire_time",
    "__version__",
]
