"""Interruptible, randomized waits.

Every wait is cut into fixed slices and re-checks the run flag between
slices, so clearing the flag ends the wait within one slice. Waits never
raise on interruption; they report whether they ran to completion.
"""
from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .schemas import SEGMENT_DELAY_MIN_RATIO

log = logging.getLogger(__name__)

RunFlag = Callable[[], bool]
T = TypeVar("T")

# Returned by :meth:`Pacer.run_interruptible` when the run flag cleared first.
INTERRUPTED: Any = object()


class Pacer:
    """Produces human-like delays that yield cooperatively to the event loop."""

    def __init__(
        self,
        *,
        slice_ms: int = 100,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if slice_ms <= 0:
            raise ValueError("slice_ms must be positive")
        self.slice_ms = slice_ms
        self._rng = rng or random.Random()
        self._sleep = sleep

    def draw(self, min_ms: float, max_ms: float) -> float:
        low, high = sorted((max(0.0, float(min_ms)), max(0.0, float(max_ms))))
        return self._rng.uniform(low, high)

    async def wait(self, min_ms: float, max_ms: float, is_running: RunFlag) -> bool:
        """Wait a uniform delay in ``[min_ms, max_ms]``. False when interrupted."""

        return await self.sleep_ms(self.draw(min_ms, max_ms), is_running)

    async def wait_between_segments(self, max_ms: float, is_running: RunFlag) -> bool:
        delay = self.draw(SEGMENT_DELAY_MIN_RATIO * max_ms, max_ms)
        log.info("pacing.segment_delay", extra={"delay_ms": round(delay)})
        return await self.sleep_ms(delay, is_running)

    async def sleep_ms(self, delay_ms: float, is_running: RunFlag) -> bool:
        remaining = max(0.0, float(delay_ms))
        while remaining > 0:
            if not is_running():
                return False
            step = min(self.slice_ms, remaining)
            await self._sleep(step / 1000.0)
            remaining -= step
        return is_running()

    async def watch_flag(self, is_running: RunFlag) -> None:
        """Return once the run flag clears, checking once per slice."""

        while is_running():
            await self._sleep(self.slice_ms / 1000.0)

    async def run_interruptible(self, awaitable: Awaitable[T], is_running: RunFlag) -> T:
        """Race ``awaitable`` against the run flag.

        Returns the awaitable's result, or :data:`INTERRUPTED` when the flag
        cleared first (the awaitable is cancelled). Exceptions propagate.
        """

        if not is_running():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            return INTERRUPTED
        work = asyncio.ensure_future(awaitable)
        watcher = asyncio.ensure_future(self.watch_flag(is_running))
        try:
            await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (work, watcher):
                if not task.done():
                    task.cancel()
            await asyncio.gather(work, watcher, return_exceptions=True)
        if work.done() and not work.cancelled():
            return work.result()
        return INTERRUPTED


__all__ = ["Pacer", "RunFlag", "INTERRUPTED"]
