"""Periodic tidy service for the persist store.

Runs the store's tidy coroutine on a fixed interval for as long as the
store is running.
"""
import asyncio
from typing import Awaitable, Callable, Optional

from constants import DEFAULT_TIDY_INTERVAL
from core.logging import get_logger

logger = get_logger(__name__)


class TidyService:
    """Background task that purges expired persist entries.

    The first sweep happens one interval after `start()`.
    """

    def __init__(
        self,
        tidy: Callable[[], Awaitable[int]],
        interval: Optional[float] = None
    ):
        self.tidy = tidy
        self.interval = interval or DEFAULT_TIDY_INTERVAL
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the tidy background task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._tidy_loop())
        logger.info("Tidy service started", interval=self.interval)

    async def stop(self) -> None:
        """Stop the tidy service gracefully."""
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Tidy service stopped")

    async def _tidy_loop(self) -> None:
        """Main tidy loop - runs at configured interval."""
        while self._running:
            await asyncio.sleep(self.interval)
            try:
                await self.tidy()
            except Exception as e:
                logger.error("Tidy failed", error=str(e))

    async def run_once(self) -> int:
        """Run tidy once and return the number of entries removed."""
        return await self.tidy()
