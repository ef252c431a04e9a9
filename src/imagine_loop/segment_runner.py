"""Lifecycle of a single segment: drive the adapter, classify failures, retry.

A segment moves ``pending -> working`` and ends in ``done``, ``error`` or
one of the ``paused:*`` states. While a moderation recovery is in progress
the segment shows the transient ``moderated:n/limit`` label.

Failures are classified by :class:`~imagine_loop.errors.ErrorKind` in this
order: rate limit (halt), moderation (bounded recovery, then halt), chain
precondition (fatal for the segment), anything else (generic retry budget
with a fixed cooldown).
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Collection, Optional

from . import telemetry
from .adapters.common import (
    ASSET_UPLOAD,
    ENHANCE_LABELS,
    PROMPT_INPUT,
    RETRY_LABELS,
    SUBMIT_LABELS,
    AutomationAdapter,
    label_matches,
)
from .asset_detector import AssetArrivalDetector
from .chaining import ChainingResolver
from .errors import (
    AdapterNotFound,
    DetectionTimeout,
    ErrorKind,
    ModerationBlocked,
    ModerationLimitExceeded,
    error_kind,
)
from .pacing import INTERRUPTED, Pacer
from .run_state import (
    DONE,
    ERROR,
    PAUSED_MODERATED_LIMIT,
    PAUSED_MODERATION,
    PAUSED_RATE_LIMIT,
    WORKING,
    RunState,
    moderated_status,
)
from .schemas import LoopConfig

log = logging.getLogger(__name__)

TransitionHook = Callable[[int, Optional[str]], Awaitable[None]]


class SegmentOutcome(str, Enum):
    DONE = "done"
    ERROR = "error"
    PAUSED = "paused"
    INTERRUPTED = "interrupted"


@dataclass
class SegmentResult:
    outcome: SegmentOutcome
    error: Optional[BaseException] = None

    def __post_init__(self) -> None:
        if self.outcome is SegmentOutcome.ERROR and self.error is None:
            raise ValueError("an ERROR result must carry the failure")


class _Interrupted(Exception):
    """Internal signal: the run flag cleared while a step was in flight."""


class SegmentRunner:
    def __init__(
        self,
        adapter: AutomationAdapter,
        state: RunState,
        *,
        pacer: Pacer,
        detector: AssetArrivalDetector,
        resolver: ChainingResolver,
        on_transition: TransitionHook,
    ) -> None:
        self.adapter = adapter
        self.state = state
        self.pacer = pacer
        self.detector = detector
        self.resolver = resolver
        self.on_transition = on_transition

    @property
    def config(self) -> LoopConfig:
        return self.state.config

    def _running(self) -> bool:
        return self.state.is_running

    async def run(self, index: int) -> SegmentResult:
        segment = self.state.segment(index)
        await self._transition(index, WORKING)
        generic_failures = 0
        while True:
            try:
                await self._attempt(index)
                return SegmentResult(SegmentOutcome.DONE)
            except _Interrupted:
                log.info("segment.interrupted", extra={"segment_id": segment.id, "status": segment.status})
                return SegmentResult(SegmentOutcome.INTERRUPTED)
            except Exception as exc:
                kind = error_kind(exc)
                telemetry.emit_event(
                    "segment.failure",
                    {"segment_id": segment.id, "kind": kind.value, "error": str(exc)},
                )
                if kind is ErrorKind.RATE_LIMITED:
                    return await self._halt(index, PAUSED_RATE_LIMIT, exc)
                if kind is ErrorKind.MODERATION_LIMIT:
                    return await self._halt(index, PAUSED_MODERATED_LIMIT, exc)
                if kind is ErrorKind.MODERATION_BLOCKED:
                    if self.config.pause_on_moderation:
                        return await self._halt(index, PAUSED_MODERATION, exc)
                    # Moderation outside the detection step: recover, then rerun the attempt.
                    try:
                        await self._recover_from_moderation(index)
                    except ModerationLimitExceeded as limit_exc:
                        return await self._halt(index, PAUSED_MODERATED_LIMIT, limit_exc)
                    except _Interrupted:
                        return SegmentResult(SegmentOutcome.INTERRUPTED)
                    await self._transition(index, WORKING)
                    continue
                if kind is ErrorKind.CHAIN_PRECONDITION:
                    return await self._fail(index, exc)

                generic_failures += 1
                if generic_failures > self.config.retry_limit:
                    return await self._fail(index, exc)
                log.warning(
                    "segment.retry",
                    extra={
                        "segment_id": segment.id,
                        "kind": kind.value,
                        "attempt": generic_failures,
                        "retry_limit": self.config.retry_limit,
                        "error": str(exc),
                    },
                )
                if not await self.pacer.sleep_ms(self.config.retry_cooldown_ms, self._running):
                    return SegmentResult(SegmentOutcome.INTERRUPTED)

    async def _attempt(self, index: int) -> None:
        state = self.state
        segment = state.segment(index)
        cfg = self.config

        blob = await self._step(self.resolver.resolve_input_asset(segment, state.prior(index), state))
        exclusion = await self._step(self.detector.snapshot())
        if blob is not None:
            log.info("segment.upload", extra={"segment_id": segment.id, "size_bytes": blob.size_bytes})
            await self._step(self.adapter.upload_asset(ASSET_UPLOAD, blob))

        await self._pause(cfg.prompt_settle_ms)
        await self._step(self.adapter.type_text(PROMPT_INPUT, segment.prompt))
        await self._pause(cfg.post_type_pause_ms)
        await self._step(self.adapter.locate_and_click(label_matches(SUBMIT_LABELS)))

        asset_ref = await self._detect(index, exclusion)
        asset_ref = await self._enhance(asset_ref, exclusion)
        await self._complete(index, asset_ref)

    async def _detect(self, index: int, exclusion: Collection[str]) -> str:
        """Await the generated asset; moderation blocks rerun only this step."""

        while True:
            try:
                ref = await self.detector.await_new_asset(self.config.timeout_ms, exclusion, self._running)
            except ModerationBlocked:
                if self.config.pause_on_moderation:
                    raise
                await self._recover_from_moderation(index)
                await self._transition(index, WORKING)
                continue
            if ref is None:
                raise _Interrupted()
            return ref

    async def _recover_from_moderation(self, index: int) -> None:
        """Count a moderation hit, cool down and try the surface's retry control.

        Does not consume the generic retry budget. Raises
        ``ModerationLimitExceeded`` once ``moderation_retry_limit`` is spent.
        """

        segment = self.state.segment(index)
        limit = self.config.moderation_retry_limit
        segment.moderation_attempts += 1
        if segment.moderation_attempts > limit:
            raise ModerationLimitExceeded(
                f"segment {segment.id} moderated {segment.moderation_attempts} times (limit {limit})"
            )
        log.warning(
            "segment.moderated",
            extra={"segment_id": segment.id, "attempt": segment.moderation_attempts, "limit": limit},
        )
        await self._transition(index, moderated_status(segment.moderation_attempts, limit))
        try:
            await self._pause(self.config.moderation_cooldown_ms)
            await self._step(self.adapter.locate_and_click(label_matches(RETRY_LABELS)))
        except AdapterNotFound:
            log.info("segment.retry_control_missing", extra={"segment_id": segment.id})
        except _Interrupted:
            # A pause leaves the segment working, like any other interrupted step.
            await self._transition(index, WORKING)
            raise

    async def _enhance(self, asset_ref: str, exclusion: Collection[str]) -> str:
        if not self.config.enhance_quality:
            return asset_ref
        try:
            await self._step(self.adapter.locate_and_click(label_matches(ENHANCE_LABELS)))
            enhanced = await self.detector.await_new_asset(
                self.config.timeout_ms, set(exclusion) | {asset_ref}, self._running
            )
        except _Interrupted:
            return asset_ref
        except Exception as exc:
            log.warning("segment.enhance_discarded", extra={"asset_ref": asset_ref, "error": str(exc)})
            return asset_ref
        return enhanced or asset_ref

    async def _complete(self, index: int, asset_ref: str) -> None:
        segment = self.state.segment(index)
        self.state.last_known_asset = asset_ref
        await self.pacer.run_interruptible(
            self.resolver.prepare_next_input(self.state, index, asset_ref), self._running
        )
        if self.state.next(index) is not None:
            await self.pacer.wait_between_segments(self.config.segment_delay_max_ms, self._running)
        segment.output_asset = asset_ref
        await self._transition(index, DONE)
        telemetry.emit_event("segment.done", {"segment_id": segment.id, "asset_ref": asset_ref})

    async def _halt(self, index: int, status: str, exc: BaseException) -> SegmentResult:
        self.state.is_running = False
        message = f"Segment {index + 1} halted ({status}): {exc}"
        log.warning("segment.halted", extra={"segment_id": self.state.segment(index).id, "status": status})
        await self._transition(index, status, message)
        return SegmentResult(SegmentOutcome.PAUSED, exc)

    async def _fail(self, index: int, exc: BaseException) -> SegmentResult:
        if not self.config.continue_on_failure:
            self.state.is_running = False
        log.error(
            "segment.failed",
            extra={"segment_id": self.state.segment(index).id, "kind": error_kind(exc).value, "error": str(exc)},
        )
        await self._transition(index, ERROR, f"Segment {index + 1} failed: {exc}")
        return SegmentResult(SegmentOutcome.ERROR, exc)

    async def _transition(self, index: int, status: str, message: Optional[str] = None) -> None:
        self.state.segment(index).status = status
        await self.on_transition(index, message)

    async def _step(self, awaitable: Awaitable[Any]) -> Any:
        """Run one adapter step under the action deadline and the run flag."""

        if not self._running():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise _Interrupted()
        timeout_s = self.config.action_timeout_ms / 1000.0
        try:
            result = await self.pacer.run_interruptible(asyncio.wait_for(awaitable, timeout_s), self._running)
        except asyncio.TimeoutError as exc:
            raise DetectionTimeout(f"adapter step exceeded {self.config.action_timeout_ms} ms") from exc
        if result is INTERRUPTED:
            raise _Interrupted()
        return result

    async def _pause(self, delay_ms: float) -> None:
        if not await self.pacer.sleep_ms(delay_ms, self._running):
            raise _Interrupted()


__all__ = ["SegmentRunner", "SegmentOutcome", "SegmentResult", "TransitionHook"]
