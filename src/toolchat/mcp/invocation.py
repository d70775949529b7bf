"""Tool invocation with per-attempt deadline and bounded linear backoff."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from toolchat.errors import InvocationFailedError, SessionClosedError
from toolchat.mcp.session import ProviderSession
from toolchat.observability.metrics import record_tool_attempt, record_tool_call

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class InvocationPolicy:
    """Attempt and backoff contract for one tool call."""

    max_attempts: int = 2
    backoff_step: float = 0.5  # seconds, multiplied by the attempt index
    attempt_timeout: float = 60.0


DEFAULT_POLICY = InvocationPolicy()


def backoff_delay(attempt_index: int, policy: InvocationPolicy = DEFAULT_POLICY) -> float:
    """Delay before the 0-based attempt *attempt_index* (0 for the first)."""
    return attempt_index * policy.backoff_step


async def invoke_tool(
    session: ProviderSession,
    tool_name: str,
    arguments: dict[str, Any],
    policy: InvocationPolicy | None = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> str:
    """Call *tool_name* on *session*, retrying within *policy*.

    Success resets the session's failure counter. Exhausting every attempt
    raises :class:`InvocationFailedError` and counts as a single failure.

    Raises:
        SessionClosedError: If the session is (or becomes) closed.
        InvocationFailedError: After the last attempt fails.
    """
    cfg = policy or DEFAULT_POLICY
    last_error: Exception | None = None

    for attempt in range(cfg.max_attempts):
        if attempt > 0:
            delay = backoff_delay(attempt, cfg)
            logger.debug(
                "Retrying tool call %s on %s (attempt %d, delay %.2fs)",
                tool_name, session.name, attempt + 1, delay,
            )
            await sleep(delay)

        if session.closed:
            raise SessionClosedError(tool_name, session.name)

        try:
            result = await asyncio.wait_for(
                session.request(tool_name, arguments), timeout=cfg.attempt_timeout,
            )
        except SessionClosedError:
            raise
        except Exception as exc:
            last_error = exc
            record_tool_attempt(tool_name, provider=session.name, is_error=True)
            logger.warning(
                "Tool call failed: %s on %s (attempt %d/%d): %s",
                tool_name, session.name, attempt + 1, cfg.max_attempts,
                exc or type(exc).__name__,
            )
            continue

        record_tool_attempt(tool_name, provider=session.name)
        await session.record_success()
        record_tool_call(tool_name, provider=session.name)
        return result

    if last_error is None:
        msg = f"invocation policy allows no attempts (max_attempts={cfg.max_attempts})"
        raise RuntimeError(msg)
    if session.closed:
        raise SessionClosedError(tool_name, session.name) from last_error

    failures = await session.record_failure()
    record_tool_call(tool_name, provider=session.name, outcome="failed")
    logger.error(
        "Tool call %s exhausted %d attempts on %s (consecutive failures: %d)",
        tool_name, cfg.max_attempts, session.name, failures,
    )
    raise InvocationFailedError(tool_name, last_error, cfg.max_attempts) from last_error
