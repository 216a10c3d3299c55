from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from peermatch.monitoring.metrics import loop_ticks_total

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs ``tick`` every ``interval`` seconds until stopped.

    A tick that raises is logged and counted; the loop keeps going so a
    temporarily unreachable store never takes the instance down.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        tick: Callable[[], Awaitable[object]],
    ) -> None:
        self.name = name
        self.interval = interval
        self._tick = tick
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        self._stop.clear()
        self._task = asyncio.create_task(self.run(), name=self.name)
        logger.info("Periodic task started", extra={"loop": self.name, "interval": self.interval})
        return self._task

    async def stop(self) -> None:
        self._stop.set()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._task, timeout=self.interval + 5)
        except asyncio.TimeoutError:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Periodic task stopped", extra={"loop": self.name})

    async def run_once(self) -> bool:
        try:
            await self._tick()
        except Exception:
            loop_ticks_total.labels(loop=self.name, status="error").inc()
            logger.exception("Periodic tick failed", extra={"loop": self.name})
            return False
        loop_ticks_total.labels(loop=self.name, status="ok").inc()
        return True

    async def run(self) -> None:
        while not self._stop.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
