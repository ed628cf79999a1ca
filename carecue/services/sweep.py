"""Periodic missed-detection sweep."""

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class MissedSweep:
    """Runs ``run_pass`` on a fixed interval while started, never overlapping itself.

    A trigger that arrives while a pass is running is coalesced: the running pass is
    followed by exactly one more pass, however many triggers arrived meanwhile.
    """

    def __init__(self, run_pass: Callable[[], Awaitable[Any]], interval_seconds: float) -> None:
        self.run_pass = run_pass
        self.interval_seconds = interval_seconds
        self.passes = 0
        self._task: asyncio.Task | None = None
        self._running = False
        self._rerun = False

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self.active:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Missed-dose sweep started, every {self.interval_seconds:.0f}s")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Missed-dose sweep stopped")

    async def trigger(self) -> bool:
        """Run a pass now, or coalesce into the running one.

        Returns False when the request was folded into a pass already in progress.
        """
        if self._running:
            self._rerun = True
            return False

        self._running = True
        try:
            while True:
                self._rerun = False
                try:
                    await self.run_pass()
                except Exception as e:
                    logger.error(f"Missed-dose sweep pass failed: {e}")
                self.passes += 1
                if not self._rerun:
                    break
        finally:
            self._running = False
        return True

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.trigger()
