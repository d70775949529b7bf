"""Metrics recording: counters and histograms on the OpenTelemetry API.

Without an SDK meter provider installed every instrument is a no-op, so these
helpers are safe to call unconditionally.
"""

from __future__ import annotations

import time
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from opentelemetry import metrics

# Lazily-created instruments
_meter: Any = None
_tool_call_counter: Any = None
_tool_attempt_counter: Any = None
_generation_latency: Any = None
_iteration_histogram: Any = None


def _ensure_instruments() -> None:
    """Create meter and instruments on first use."""
    global _meter, _tool_call_counter, _tool_attempt_counter
    global _generation_latency, _iteration_histogram

    if _meter is not None:
        return

    _meter = metrics.get_meter("toolchat")
    _tool_call_counter = _meter.create_counter(
        "toolchat.tool_calls",
        description="Tool invocations by final outcome",
    )
    _tool_attempt_counter = _meter.create_counter(
        "toolchat.tool_attempts",
        description="Individual tool call attempts, including retries",
    )
    _generation_latency = _meter.create_histogram(
        "toolchat.generation_latency",
        description="Model endpoint response latency",
        unit="ms",
    )
    _iteration_histogram = _meter.create_histogram(
        "toolchat.conversation_iterations",
        description="Generations needed per conversation run",
    )


def record_tool_call(tool_name: str, *, provider: str = "", outcome: str = "ok") -> None:
    """Record the final outcome of one tool invocation."""
    _ensure_instruments()
    _tool_call_counter.add(1, {"tool": tool_name, "provider": provider, "outcome": outcome})


def record_tool_attempt(tool_name: str, *, provider: str = "", is_error: bool = False) -> None:
    _ensure_instruments()
    _tool_attempt_counter.add(
        1, {"tool": tool_name, "provider": provider, "error": str(is_error).lower()},
    )


def record_generation_latency(latency_ms: float, *, model: str = "") -> None:
    """Record model endpoint latency in milliseconds."""
    _ensure_instruments()
    _generation_latency.record(latency_ms, {"model": model})


def record_iterations(iterations: int, *, outcome: str = "final") -> None:
    _ensure_instruments()
    _iteration_histogram.record(iterations, {"outcome": outcome})


@contextmanager
def timed_generation(*, model: str = "") -> Generator[None, None, None]:
    """Context manager that measures wall-clock time of one generation call."""
    start = time.monotonic()
    try:
        yield
    finally:
        record_generation_latency((time.monotonic() - start) * 1000, model=model)


def reset_instruments() -> None:
    """Reset module-level instruments (test isolation)."""
    global _meter, _tool_call_counter, _tool_attempt_counter
    global _generation_latency, _iteration_histogram
    _meter = None
    _tool_call_counter = None
    _tool_attempt_counter = None
    _generation_latency = None
    _iteration_histogram = None
