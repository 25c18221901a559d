"""Async polling loop used by the dispatcher."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from rsched.infrastructure.logger import logger


class PollLoop:
    """Calls a coroutine function every `interval_s` seconds.

    The interval is measured from the start of one tick to the start of the
    next, so a slow tick does not push later ticks back. A failing tick is
    logged and the loop keeps going; only cancellation or stop() ends it.
    """

    def __init__(self, name: str, interval_s: float, fn: Callable[[], Awaitable[object]]) -> None:
        self._name = name
        self._interval = interval_s
        self._fn = fn
        self._task: asyncio.Task[None] | None = None
        self._stopped = False
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self._stopped = False
        self._task = asyncio.create_task(self._loop(), name=f"{self._name}-loop")
        logger.info(f"{self._name} loop started", interval_s=self._interval)

    def stop(self) -> None:
        self._stopped = True
        if self._task:
            self._task.cancel()
            self._task = None
        logger.info(f"{self._name} loop stopped", ticks=self.ticks)

    async def _loop(self) -> None:
        clock = asyncio.get_running_loop().time
        while not self._stopped:
            started = clock()
            try:
                await self._fn()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception(f"Error in {self._name} loop", tick=self.ticks)
            self.ticks += 1
            if not self._stopped:
                await asyncio.sleep(max(0.0, self._interval - (clock() - started)))


def start_poll_loop(name: str, interval_s: float, fn: Callable[[], Awaitable[object]]) -> PollLoop:
    """Create and start a polling loop. Returns a handle to stop it."""
    loop = PollLoop(name, interval_s, fn)
    loop.start()
    return loop
