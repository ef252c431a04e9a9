from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")


def exponential_backoff(base: float = 0.1, factor: float = 2.0, jitter: float = 0.1, max_backoff: float = 30.0) -> Callable[[int], float]:
    """Return a function that computes backoff delay (seconds) for attempt index (0-based).

    deterministic when `jitter` is 0.0; otherwise adds uniform jitter in
    +/- jitter*delay.
    """

    def _delay(attempt: int) -> float:
        if attempt <= 0:
            return 0.0
        delay = base * (factor ** (attempt - 1))
        delay = min(delay, max_backoff)
        if jitter and jitter > 0:
            delta = (random.random() * 2 - 1) * jitter * delay
            delay = max(0.0, delay + delta)
        return delay

    return _delay


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    attempts: int = 3,
    backoff_fn: Optional[Callable[[int], float]] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
) -> T:
    """Await `fn()` with retries. Returns its result or raises the last exception.

    `attempts` is the total number of tries including the first. Sleeping
    between tries yields to the event loop.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    last_exc: Optional[Exception] = None
    backoff_fn = backoff_fn or exponential_backoff()
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except Exception as e:
            last_exc = e
            if on_retry:
                try:
                    on_retry(attempt, e)
                except Exception:
                    log.debug("retry.on_retry_failed", exc_info=True)
            if attempt == attempts:
                break
            await asyncio.sleep(backoff_fn(attempt))
    assert last_exc is not None
    raise last_exc


__all__ = ["exponential_backoff", "retry_async"]
