"""OpenTelemetry-based metrics for toolchat."""

from toolchat.observability.metrics import (
    record_generation_latency,
    record_iterations,
    record_tool_attempt,
    record_tool_call,
    reset_instruments,
    timed_generation,
)

__all__ = [
    "record_generation_latency",
    "record_iterations",
    "record_tool_attempt",
    "record_tool_call",
    "reset_instruments",
    "timed_generation",
]
