"""Background removal of expired short links.

Expired records are already invisible to every read; the sweeper only keeps
the table from growing with dead rows.
"""

import asyncio
import logging

from shortlinks.allocator import ShortLinkAllocator
from shortlinks.exceptions import StoreTimeoutError, StoreUnavailableError

__all__ = ["ExpiredLinkSweeper"]


class ExpiredLinkSweeper:
    """Runs ``purge_expired()`` on a fixed interval."""

    def __init__(self, allocator: ShortLinkAllocator, interval_seconds: float, logger: logging.Logger | None = None):
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self.allocator = allocator
        self.interval_seconds = interval_seconds
        self.logger = logger or logging.getLogger("shortlinks.sweeper")
        self._task: asyncio.Task | None = None

    async def sweep_once(self) -> int:
        try:
            return await self.allocator.purge_expired()
        except (StoreUnavailableError, StoreTimeoutError) as e:
            self.logger.debug(f"Skipping expired-link sweep: {e}")
            return 0

    async def run_continuous_sweeping(self) -> None:
        self.logger.info(f"Starting expired-link sweeps every {self.interval_seconds}s")

        while True:
            try:
                await self.sweep_once()
            except Exception as e:
                self.logger.error(f"Expired-link sweep error: {e}")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_continuous_sweeping())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
