"""Detect the asset produced by a generation request.

Three independent sources race to a verdict: an event-driven watch over the
adapter's mutation stream, a fixed-interval poll and a deadline timer. The
run flag is watched as a fourth source so a pause ends detection within one
wait slice. The first source to finish wins and every other source is
cancelled before returning.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Collection, Iterable, List, Optional, Sequence

from . import telemetry
from .adapters.common import AutomationAdapter, mutation_source
from .errors import DetectionTimeout, ModerationBlocked, RateLimited
from .pacing import Pacer, RunFlag

log = logging.getLogger(__name__)


class AssetArrivalDetector:
    def __init__(
        self,
        adapter: AutomationAdapter,
        pacer: Pacer,
        *,
        patterns: Sequence[re.Pattern[str]],
        poll_interval_ms: int = 1_000,
        stabilization_ms: int = 2_000,
    ) -> None:
        self.adapter = adapter
        self.pacer = pacer
        self.patterns = list(patterns)
        self.poll_interval_ms = poll_interval_ms
        self.stabilization_ms = stabilization_ms

    async def snapshot(self) -> frozenset[str]:
        """Assets already visible; pass the result as the exclusion set."""

        return frozenset(ref for ref in await self.adapter.list_visible_assets() if ref)

    def is_valid_ref(self, ref: str) -> bool:
        return any(pattern.search(ref) for pattern in self.patterns)

    async def evaluate(self, exclusion: Collection[str]) -> Optional[str]:
        """One evaluation pass: policy blocks first, then new valid assets."""

        scan = await self.adapter.scan_for_policy_block()
        if scan.rate_limited:
            raise RateLimited("rate limit indicator visible on target surface")
        if scan.moderated:
            raise ModerationBlocked("moderation indicator visible on target surface")
        for ref in await self.adapter.list_visible_assets():
            if ref and ref not in exclusion and self.is_valid_ref(ref):
                return ref
        return None

    async def await_new_asset(
        self,
        timeout_ms: int,
        exclusion: Iterable[str],
        is_running: RunFlag,
    ) -> Optional[str]:
        """Return the new asset ref, or ``None`` if the run flag cleared first.

        Raises ``DetectionTimeout``, ``RateLimited`` or ``ModerationBlocked``.
        """

        excluded = frozenset(exclusion)
        sources: List[asyncio.Task] = [
            asyncio.ensure_future(self._poll(excluded)),
            asyncio.ensure_future(self._deadline(timeout_ms)),
            asyncio.ensure_future(self.pacer.watch_flag(is_running)),
        ]
        events = mutation_source(self.adapter)
        if events is not None:
            sources.append(asyncio.ensure_future(self._watch(events, excluded)))
        try:
            done, _ = await asyncio.wait(sources, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in sources:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*sources, return_exceptions=True)

        winner = _pick_winner(sources, done)
        ref = winner.result()
        if ref is None:
            log.info("asset_detector.interrupted")
            return None
        log.info("asset_detector.accepted", extra={"asset_ref": ref})
        telemetry.emit_event("detector.asset_accepted", {"asset_ref": ref})
        # Give a freshly attached asset time to finish loading.
        await self.pacer.sleep_ms(self.stabilization_ms, lambda: True)
        return ref

    async def _poll(self, exclusion: frozenset[str]) -> str:
        while True:
            ref = await self.evaluate(exclusion)
            if ref is not None:
                return ref
            await asyncio.sleep(self.poll_interval_ms / 1000.0)

    async def _watch(self, events, exclusion: frozenset[str]) -> str:
        async for _ in events():
            ref = await self.evaluate(exclusion)
            if ref is not None:
                return ref
        # Mutation stream ended; leave the verdict to the other sources.
        await asyncio.get_running_loop().create_future()

    async def _deadline(self, timeout_ms: int) -> str:
        await asyncio.sleep(timeout_ms / 1000.0)
        raise DetectionTimeout(f"no new asset within {timeout_ms} ms")


def _pick_winner(sources: List[asyncio.Task], done: Collection[asyncio.Task]) -> asyncio.Task:
    # A block verdict or accepted asset outranks a timeout landing in the same tick.
    finished = [task for task in sources if task in done and not task.cancelled()]
    for task in finished:
        exc = task.exception()
        if exc is None or not isinstance(exc, DetectionTimeout):
            return task
    return finished[0]


__all__ = ["AssetArrivalDetector"]
