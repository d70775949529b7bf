"""MCP (Model Context Protocol) tool-provider client system."""

from toolchat.mcp.client import McpConnection
from toolchat.mcp.invocation import InvocationPolicy, backoff_delay, invoke_tool
from toolchat.mcp.registry import SessionRegistry
from toolchat.mcp.session import ProviderSession
from toolchat.mcp.transport import bind_transport

__all__ = [
    "InvocationPolicy",
    "McpConnection",
    "ProviderSession",
    "SessionRegistry",
    "backoff_delay",
    "bind_transport",
    "invoke_tool",
]
