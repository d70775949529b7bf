"""Delivery of broadcast answers to chat-platform recipients."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel

from toolchat.errors import ConfigError, ToolchatError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DeliveryTarget:
    """A ``platform:recipient`` destination."""

    platform: str
    recipient: str

    @classmethod
    def parse(cls, value: str) -> DeliveryTarget:
        """Parse ``"Telegram:123"`` or ``"QQ:Group:456"``.

        The platform is lower-cased; everything after the first colon is the
        recipient, colons included.

        Raises:
            ConfigError: No colon, or an empty platform or recipient.
        """
        platform, sep, recipient = value.strip().partition(":")
        if not sep or not platform or not recipient:
            raise ConfigError(f"invalid delivery target {value!r}, expected 'platform:recipient'")
        return cls(platform=platform.lower(), recipient=recipient)

    def __str__(self) -> str:
        return f"{self.platform}:{self.recipient}"


class DeliveryError(ToolchatError):
    """A message could not be delivered to its target."""


class Deliverer(Protocol):
    async def deliver(self, target: DeliveryTarget, text: str) -> None:
        ...


class ConsoleDeliverer:
    """Prints each delivery as a rich panel. Used by the CLI."""

    def __init__(self, console: Console | None = None):
        self._console = console or Console()

    async def deliver(self, target: DeliveryTarget, text: str) -> None:
        self._console.print(Panel(Markdown(text), title=str(target), border_style="cyan"))


class RoutingDeliverer:
    """Dispatches by platform to the deliverer registered for it."""

    def __init__(
        self,
        routes: Mapping[str, Deliverer] | None = None,
        *,
        fallback: Deliverer | None = None,
    ):
        self._routes = {k.lower(): v for k, v in (routes or {}).items()}
        self._fallback = fallback

    def register(self, platform: str, deliverer: Deliverer) -> None:
        self._routes[platform.lower()] = deliverer

    async def deliver(self, target: DeliveryTarget, text: str) -> None:
        deliverer = self._routes.get(target.platform, self._fallback)
        if deliverer is None:
            raise DeliveryError(f"no deliverer for platform {target.platform!r}")
        logger.debug("Delivering %d chars to %s", len(text), target)
        await deliverer.deliver(target, text)
