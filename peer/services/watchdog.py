"""
Inactivity watchdog.

Each peer runs its own watchdog. When no committed action has happened
for the timeout, the watchdog fires once; the session then finishes the
room with no winner. Both peers may fire at about the same time; the
room write is conditional, so that is harmless.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class InactivityWatchdog:
    """
    Polls the last-move timestamp on an interval.

    Args:
        timeout: Seconds without a committed move before expiry.
        interval: Seconds between checks.
        clock: Returns the current time in seconds.
        last_move: Returns the time of the last committed move.
        is_active: Returns False once the game is over.
        on_expired: Awaited once when the timeout is reached.
    """

    def __init__(
        self,
        timeout: float,
        interval: float,
        clock: Callable[[], float],
        last_move: Callable[[], float],
        is_active: Callable[[], bool],
        on_expired: Callable[[], Awaitable[None]],
    ):
        self.timeout = timeout
        self.interval = interval
        self.clock = clock
        self.last_move = last_move
        self.is_active = is_active
        self.on_expired = on_expired
        self.fired = False
        self._task: Optional[asyncio.Task] = None

    def seconds_remaining(self) -> float:
        return max(0.0, self.timeout - (self.clock() - self.last_move()))

    async def check(self) -> bool:
        """Run one check. Returns True if this call fired the expiry."""
        if self.fired or not self.is_active():
            return False
        if self.clock() - self.last_move() < self.timeout:
            return False

        self.fired = True
        logger.info(f"No move for {self.timeout}s, game inactive")
        await self.on_expired()
        return True

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while not self.fired:
            await asyncio.sleep(self.interval)
            try:
                await self.check()
            except Exception as e:
                logger.error(f"Watchdog check failed: {e}", exc_info=True)
