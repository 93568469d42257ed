# backend/app/services/scheduler.py
"""
Minimal in-process periodic runner for maintenance jobs.

Each PeriodicTask owns one asyncio.Task. A failed run is logged and the loop
waits for the next interval; only stop() ends it.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    def __init__(self, name: str, interval_seconds: float, func: Callable[[], Awaitable[Any]]):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self.func = func
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.info("Started periodic task %s (every %ss)", self.name, self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Stopped periodic task %s", self.name)

    async def run_once(self) -> None:
        try:
            await self.func()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Periodic task %s failed", self.name)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.run_once()
