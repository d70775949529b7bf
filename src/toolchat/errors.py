"""Exception hierarchy for toolchat.

Every module imports from here. The hierarchy is:

    ToolchatError
    ├── ConfigError
    ├── AccessDeniedError
    ├── StorageError
    ├── ConnectFailureError(provider)
    ├── ToolError(tool_name)
    │   ├── ToolNotFoundError
    │   ├── SessionClosedError
    │   ├── ToolExecutionError
    │   └── InvocationFailedError(cause, attempts)
    ├── ArgumentParseError(tool_call_id)
    └── ConversationError
        ├── GenerationError
        ├── IterationsExceededError(max_iterations)
        └── ConversationTimeoutError(timeout)

Tool errors and argument errors never leave the conversation loop; they are
written into the transcript. Only ConversationError subclasses reach callers
of the loop.
"""

from __future__ import annotations


class ToolchatError(Exception):
    """Base exception for all toolchat errors."""


class ConfigError(ToolchatError):
    """Invalid configuration."""


class AccessDeniedError(ToolchatError):
    """User is not on any allow-list for the platform."""

    def __init__(self, platform: str, user_id: str) -> None:
        self.platform = platform
        self.user_id = user_id
        super().__init__(f"User {user_id!r} is not allowed on {platform!r}")


class StorageError(ToolchatError):
    """Per-user settings could not be persisted."""


# ─── Provider connection ──────────────────────────────────────


class ConnectFailureError(ToolchatError):
    """Tool provider unreachable, or its handshake or discovery failed."""

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"[{provider}] {message}")


# ─── Tool errors ──────────────────────────────────────────────


class ToolError(ToolchatError):
    """Base for errors tied to one tool name."""

    def __init__(self, tool_name: str, message: str) -> None:
        self.tool_name = tool_name
        super().__init__(message)


class ToolNotFoundError(ToolError):
    """No provider ever registered this tool name."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(tool_name, f"tool not found: {tool_name}")


class SessionClosedError(ToolError):
    """The provider owning this tool has been shut down."""

    def __init__(self, tool_name: str, provider: str) -> None:
        self.provider = provider
        super().__init__(tool_name, f"session closed for tool: {tool_name} ({provider})")


class ToolExecutionError(ToolError):
    """The provider answered a call with an error result."""


class InvocationFailedError(ToolError):
    """All attempts of a tool call failed. Wraps the last cause."""

    def __init__(self, tool_name: str, cause: BaseException, attempts: int) -> None:
        self.cause = cause
        self.attempts = attempts
        super().__init__(
            tool_name,
            f"tool call {tool_name} failed after {attempts} attempts: {cause}",
        )


class ArgumentParseError(ToolchatError):
    """Model produced tool-call arguments that are not a JSON object."""

    def __init__(self, tool_call_id: str, message: str) -> None:
        self.tool_call_id = tool_call_id
        super().__init__(message)


# ─── Conversation errors ──────────────────────────────────────


class ConversationError(ToolchatError):
    """Base for errors that abort a conversation loop."""


class GenerationError(ConversationError):
    """The model endpoint failed."""


class IterationsExceededError(ConversationError):
    """The loop did not produce a final answer within its bound."""

    def __init__(self, max_iterations: int) -> None:
        self.max_iterations = max_iterations
        super().__init__(
            f"exceeded maximum iterations ({max_iterations}) without final response"
        )


class ConversationTimeoutError(ConversationError):
    """The end-to-end deadline of a conversation run elapsed."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"conversation timed out after {timeout:g}s")
