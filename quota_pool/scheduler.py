"""Background ticks that reopen key windows."""

import asyncio
import logging
import time
from typing import Optional

from quota_pool.key_pool import KeyPool

logger = logging.getLogger(__name__)


def seconds_until_next_minute(now: Optional[float] = None) -> float:
    current = time.time() if now is None else now
    return 60.0 - (current % 60.0)


class PoolTicker:
    """Calls the pool's minute tick on every wall-clock minute boundary and
    its day tick when the reset timezone's date rolls over."""

    def __init__(self, key_pool: KeyPool):
        self.key_pool = key_pool
        self._task: Optional["asyncio.Task[None]"] = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="pool-ticker")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def tick(self) -> None:
        await self.key_pool.on_minute_boundary()
        if await self.key_pool.check_and_reset_daily():
            logger.info("Day boundary reached, key pool reset")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(seconds_until_next_minute())
            try:
                await self.tick()
            except Exception:
                logger.exception("Key pool tick failed")
