"""Periodic expiry sweep for the instance cache."""

import asyncio
import logging
from typing import Optional

from .cache import InstanceCache

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Recurring background task that purges expired instances.

    A failing tick is logged and the loop carries on with the next one.

    Args:
        cache: Cache to sweep
        interval_seconds: Delay between sweeps
    """

    def __init__(self, cache: InstanceCache, interval_seconds: float = 300.0):
        self.cache = cache
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if not self._task:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    def run_once(self) -> int:
        """Run a single sweep; returns removed count (0 on failure)."""
        try:
            return self.cache.sweep()
        except Exception:
            logger.exception("Expiry sweep failed; retrying on next tick")
            return 0

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            self.run_once()
