"""
Local countdown for an ongoing session.

The server owns the clock: the countdown is always (re)based on the
remaining time of the latest authoritative snapshot and reaching zero only
asks the server to end the match.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class TimerAuthority:
    def __init__(
        self,
        on_tick: Callable[[int], None] | None = None,
        on_timeout: Callable[[], None] | None = None,
        interval: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        autotick: bool = True,
    ) -> None:
        self.on_tick = on_tick
        self.on_timeout = on_timeout
        self.interval = interval
        self._sleep = sleep
        self.autotick = autotick
        self.remaining = 0
        self.running = False
        self.expired = False
        self._task: asyncio.Task | None = None
        self._ticking = False

    def start(self, limit_seconds: int) -> None:
        self.stop()
        self.remaining = max(0, int(limit_seconds))
        self.running = True
        self.expired = False
        logger.debug("Timer started at %ss", self.remaining)
        if self.remaining == 0:
            self._expire()
            return
        if self.autotick:
            self._task = asyncio.get_running_loop().create_task(self._run())

    def rearm(self, remaining_seconds: int) -> None:
        """Restart from the server's remaining time, dropping any local count."""
        self.start(remaining_seconds)

    def tick(self) -> None:
        if not self.running:
            return
        self._ticking = True
        try:
            self.remaining = max(0, self.remaining - 1)
            if self.on_tick:
                self.on_tick(self.remaining)
            if self.remaining == 0:
                self._expire()
        finally:
            self._ticking = False

    def stop(self) -> None:
        self.running = False
        task, self._task = self._task, None
        if task is not None and not task.done() and not self._ticking:
            task.cancel()

    def _expire(self) -> None:
        # fires once per arming; stop() first so a re-entrant tick is a no-op
        self.stop()
        if self.expired:
            return
        self.expired = True
        logger.info("Local timer reached zero")
        if self.on_timeout:
            self.on_timeout()

    async def _run(self) -> None:
        while self.running:
            await self._sleep(self.interval)
            self.tick()
