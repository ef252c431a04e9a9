"""Deterministic scripted surface for tests and dry runs.

``ScriptedSurfaceAdapter`` simulates the interactive target: submitting a
prompt consumes the next scripted generation outcome, which lands on the
surface after ``latency_ms``:

- ``ok``: a new ``blob:`` asset becomes visible;
- ``rate_limit`` / ``moderation``: the matching policy indicator appears;
- ``silent``: nothing happens (the orchestrator eventually times out).

Per-operation failures are injected with :meth:`fail_next`.
"""
from __future__ import annotations

import asyncio
import itertools
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Iterable, List, Optional, Sequence, Tuple

from ..errors import AdapterNotFound, LoopError
from .common import AssetBlob, LabelPredicate, PolicyScan

GENERATION_OUTCOMES = ("ok", "rate_limit", "moderation", "silent")

SUBMIT_CONTROL = "Make video"
RETRY_CONTROL = "Retry"
ENHANCE_CONTROL = "Upscale"


class ScriptedSurfaceAdapter:
    def __init__(
        self,
        generations: Sequence[str] = (),
        *,
        default_outcome: str = "ok",
        latency_ms: float = 0.0,
        initial_assets: Iterable[str] = (),
        supports_enhance: bool = False,
        emit_mutations: bool = True,
        asset_prefix: str = "blob:https://grok.com/",
    ) -> None:
        for outcome in list(generations) + [default_outcome]:
            if outcome not in GENERATION_OUTCOMES:
                raise ValueError(f"unknown generation outcome {outcome!r}")
        self._script: Deque[str] = deque(generations)
        self.default_outcome = default_outcome
        self.latency_ms = latency_ms
        self.visible_assets: List[str] = list(initial_assets)
        self.supports_enhance = supports_enhance
        self.emit_mutations = emit_mutations
        self.asset_prefix = asset_prefix
        self.rate_limited = False
        self.moderated = False
        self.typed: List[Tuple[str, str]] = []
        self.uploads: List[AssetBlob] = []
        self.clicks: List[str] = []
        self.submissions = 0
        self._failures: Dict[str, Deque[LoopError]] = defaultdict(deque)
        self._subscribers: List[asyncio.Queue] = []
        self._counter = itertools.count(1)
        self._timers: List[asyncio.TimerHandle] = []

    # -- scripting helpers ------------------------------------------------

    def fail_next(self, operation: str, *errors: LoopError) -> None:
        """Queue errors raised by the next calls to ``operation``."""

        self._failures[operation].extend(errors)

    def queue_generations(self, *outcomes: str) -> None:
        self._script.extend(outcomes)

    def close(self) -> None:
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()

    # -- adapter operations -----------------------------------------------

    async def type_text(self, target: str, text: str) -> None:
        self._raise_injected("type_text")
        self.typed.append((target, text))

    async def click_control(self, target: str) -> None:
        self._raise_injected("click_control")
        self.clicks.append(target)

    async def upload_asset(self, target: str, blob: AssetBlob) -> None:
        self._raise_injected("upload_asset")
        self.uploads.append(blob)

    async def locate_and_click(self, label_predicate: LabelPredicate) -> None:
        self._raise_injected("locate_and_click")
        if label_predicate(SUBMIT_CONTROL):
            self.clicks.append(SUBMIT_CONTROL)
            self.submissions += 1
            self._schedule(self._next_outcome())
            return
        if label_predicate(RETRY_CONTROL) and self.moderated:
            self.clicks.append(RETRY_CONTROL)
            self.moderated = False
            self._schedule(self._next_outcome())
            return
        if label_predicate(ENHANCE_CONTROL) and self.supports_enhance and self.visible_assets:
            self.clicks.append(ENHANCE_CONTROL)
            base = self.visible_assets[-1]
            self._later(lambda: self._show_asset(f"{base}-hd"))
            return
        raise AdapterNotFound("no matching control on the surface")

    async def list_visible_assets(self) -> List[str]:
        self._raise_injected("list_visible_assets")
        return list(self.visible_assets)

    async def scan_for_policy_block(self) -> PolicyScan:
        return PolicyScan(rate_limited=self.rate_limited, moderated=self.moderated)

    async def extract_trailing_frame(self, asset_ref: str) -> AssetBlob:
        self._raise_injected("extract_trailing_frame")
        return AssetBlob(data=f"frame:{asset_ref}".encode("utf-8"), mime_type="image/jpeg", source_ref=asset_ref)

    async def mutation_events(self) -> AsyncIterator[None]:
        if not self.emit_mutations:
            return
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            while True:
                await queue.get()
                yield None
        finally:
            self._subscribers.remove(queue)

    # -- simulation ---------------------------------------------------------

    def _next_outcome(self) -> str:
        return self._script.popleft() if self._script else self.default_outcome

    def _schedule(self, outcome: str) -> None:
        if outcome == "ok":
            ref = f"{self.asset_prefix}{next(self._counter):04d}"
            self._later(lambda: self._show_asset(ref))
        elif outcome == "rate_limit":
            self._later(lambda: self._set_block(rate_limited=True))
        elif outcome == "moderation":
            self._later(lambda: self._set_block(moderated=True))

    def _later(self, callback) -> None:
        loop = asyncio.get_running_loop()
        self._timers.append(loop.call_later(self.latency_ms / 1000.0, callback))

    def _show_asset(self, ref: str) -> None:
        self.visible_assets.append(ref)
        self._notify()

    def _set_block(self, *, rate_limited: bool = False, moderated: bool = False) -> None:
        self.rate_limited = self.rate_limited or rate_limited
        self.moderated = self.moderated or moderated
        self._notify()

    def _notify(self) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(None)

    def _raise_injected(self, operation: str) -> None:
        pending = self._failures.get(operation)
        if pending:
            raise pending.popleft()


def build_stub_adapter(generations: Optional[Sequence[str]] = None) -> ScriptedSurfaceAdapter:
    """Factory used by the CLI ``--adapter stub`` alias."""

    return ScriptedSurfaceAdapter(generations or (), latency_ms=50.0)


__all__ = ["ScriptedSurfaceAdapter", "build_stub_adapter", "GENERATION_OUTCOMES"]
