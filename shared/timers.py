from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

log = logging.getLogger("genqueue.timers")


class PeriodicTask:
    """Run an async callback every ``interval_s`` seconds on the running loop.

    ``start`` and ``stop`` are idempotent. Exceptions raised by the callback
    are logged and the loop keeps going.
    """

    def __init__(self, callback: Callable[[], Awaitable[None]], interval_s: float, name: str = "periodic"):
        self.callback = callback
        self.interval_s = max(interval_s, 0.01)
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                await self.callback()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Periodic task %s failed", self.name)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
