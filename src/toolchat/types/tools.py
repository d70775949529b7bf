"""Tool catalog types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

EMPTY_OBJECT_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    """A tool discovered on a provider and exposed to the model."""

    name: str
    description: str
    parameter_schema: dict[str, Any] = field(
        default_factory=lambda: dict(EMPTY_OBJECT_SCHEMA),
    )
