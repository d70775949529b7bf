"""Daily scheduled broadcast: run one conversation at a fixed local time."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, time, timedelta
from typing import Any, ClassVar

from toolchat.delivery.targets import Deliverer, DeliveryTarget
from toolchat.errors import ConfigError
from toolchat.types.config import BroadcastConfig
from toolchat.types.messages import ChatMessage

logger = logging.getLogger(__name__)

BROADCAST_SYSTEM_PROMPT = "You are a news reporter."
GUARD_DELAY = 60.0

_HHMM = re.compile(r"^(\d{1,2}):(\d{2})$")

ConversationRunner = Callable[[list[ChatMessage]], Awaitable[str]]


def parse_fire_time(value: str) -> time:
    """Parse ``HH:MM`` (24-hour).

    Raises:
        ConfigError: Anything else, including out-of-range fields.
    """
    match = _HHMM.match(value.strip())
    if match is None:
        raise ConfigError(f"invalid broadcast time {value!r}, expected HH:MM")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ConfigError(f"invalid broadcast time {value!r}, expected HH:MM")
    return time(hour, minute)


def next_fire_at(now: datetime, fire_time: time) -> datetime:
    """The next instant at *fire_time*: today unless it already passed."""
    candidate = now.replace(
        hour=fire_time.hour, minute=fire_time.minute, second=0, microsecond=0,
    )
    if candidate < now:
        candidate += timedelta(days=1)
    return candidate


class BroadcastDriver:
    """Compute next fire time, sleep, run, deliver, guard, repeat.

    At most one driver loop runs per process.
    """

    _active: ClassVar[BroadcastDriver | None] = None

    def __init__(
        self,
        config: BroadcastConfig,
        runner: ConversationRunner,
        deliverer: Deliverer,
        *,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        guard_delay: float = GUARD_DELAY,
    ):
        self._config = config
        self._runner = runner
        self._deliverer = deliverer
        self._clock = clock
        self._sleep = sleep
        self._guard_delay = guard_delay
        self._task: asyncio.Task[None] | None = None
        self.targets = _parse_targets(config.targets)

    @property
    def running(self) -> bool:
        return BroadcastDriver._active is self

    def start(self) -> asyncio.Task[None]:
        """Run :meth:`run` in a background task.

        Raises:
            RuntimeError: Another driver loop is already running.
        """
        if BroadcastDriver._active is not None:
            raise RuntimeError("a broadcast driver is already running")
        BroadcastDriver._active = self
        self._task = asyncio.create_task(self._run_claimed(), name="toolchat-broadcast")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if BroadcastDriver._active is self:
            BroadcastDriver._active = None

    async def run(self) -> None:
        """Run the schedule loop in the current task until cancelled.

        Returns without raising when the configured time is malformed.

        Raises:
            RuntimeError: A driver loop is already running, including one started
                on this instance with :meth:`start`.
        """
        if BroadcastDriver._active is not None:
            raise RuntimeError("a broadcast driver is already running")
        BroadcastDriver._active = self
        await self._run_claimed()

    async def _run_claimed(self) -> None:
        try:
            try:
                fire_time = parse_fire_time(self._config.time)
            except ConfigError as exc:
                logger.error("Broadcast disabled: %s", exc)
                return

            while True:
                now = self._clock()
                fire_at = next_fire_at(now, fire_time)
                delay = (fire_at - now).total_seconds()
                logger.info("Broadcast scheduled for %s (in %.0fs)", fire_at.isoformat(), delay)
                await self._sleep(delay)
                await self.fire_once()
                await self._sleep(self._guard_delay)
        finally:
            if BroadcastDriver._active is self:
                BroadcastDriver._active = None

    async def fire_once(self) -> str:
        """Generate one broadcast and deliver it to every target.

        Failures are logged, never raised. Returns the delivered text, or ""
        when nothing was sent.
        """
        logger.info("Executing scheduled broadcast")
        transcript = [
            ChatMessage.system(BROADCAST_SYSTEM_PROMPT),
            ChatMessage.user(self._config.prompt),
        ]
        try:
            content = await self._runner(transcript)
        except Exception as exc:
            logger.error("Broadcast generation failed: %s", exc)
            return ""
        if not content:
            logger.error("Broadcast content empty, nothing delivered")
            return ""

        for target in self.targets:
            logger.info("Broadcasting to %s", target)
            try:
                await self._deliverer.deliver(target, content)
            except Exception as exc:
                logger.error("Failed to deliver broadcast to %s: %s", target, exc)
        return content


def _parse_targets(values: Sequence[str]) -> list[DeliveryTarget]:
    targets: list[DeliveryTarget] = []
    for value in values:
        try:
            targets.append(DeliveryTarget.parse(value))
        except ConfigError as exc:
            logger.warning("Skipping broadcast target: %s", exc)
    return targets
