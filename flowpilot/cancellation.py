"""
Cooperative pause/abort token checked at every suspension point.

Pause never interrupts an in-flight remote call; it is observed at the next
checkpoint() and polled until resumed. Abort wins over pause and surfaces
as JobAbortedError.
"""

import asyncio
import logging

from .errors import JobAbortedError

logger = logging.getLogger(__name__)


class CancellationToken:
    def __init__(self, pause_poll_interval: float = 1.0):
        self.pause_poll_interval = pause_poll_interval
        self._paused = False
        self._aborted = asyncio.Event()

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def aborted(self) -> bool:
        return self._aborted.is_set()

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    def abort(self) -> None:
        self._aborted.set()

    async def checkpoint(self) -> None:
        """Raise if aborted; block while paused."""
        if self.aborted:
            raise JobAbortedError("Job aborted")
        if self._paused:
            logger.info("Job paused, waiting for resume")
            while self._paused and not self.aborted:
                await self._wait_abort(self.pause_poll_interval)
            if self.aborted:
                raise JobAbortedError("Job aborted while paused")
            logger.info("Job resumed")

    async def sleep(self, seconds: float) -> None:
        """Sleep that returns early on abort, then checkpoints."""
        if seconds > 0:
            await self._wait_abort(seconds)
        await self.checkpoint()

    async def _wait_abort(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._aborted.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
