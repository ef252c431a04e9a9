"""Queue manager for a multi-segment generation run.

The orchestrator owns the single :class:`~imagine_loop.run_state.RunState`,
drives segments one at a time through :class:`SegmentRunner`, checkpoints
after every segment transition and exposes the control surface
(start / restore / pause / resume / regenerate / download).

Control calls acknowledge synchronously. Calls that (re)start processing
schedule it on the running event loop and return the task; progress is
observed through status notifications.

Usage::

    orchestrator = LoopOrchestrator(adapter, checkpoint_store=FilesystemCheckpointStore("loop.json"))
    task = orchestrator.start(LoopConfig(), [SegmentSpec(prompt="a fox runs")])
    await task
"""
from __future__ import annotations

import asyncio
import logging
import random
from typing import Callable, List, Optional, Sequence

from . import telemetry
from .adapters.common import AssetBlob, AutomationAdapter
from .asset_detector import AssetArrivalDetector
from .chaining import ChainingResolver
from .checkpoint import CheckpointStore, CheckpointWriter, InMemoryCheckpointStore
from .errors import LoopStateError, SegmentFailedError
from .observability import StatusBroadcaster, StatusListener
from .pacing import Pacer
from .run_state import (
    DONE,
    ERROR,
    RunState,
    Segment,
    is_moderated_status,
    needs_external_resume,
)
from .schemas import (
    CheckpointRecord,
    DownloadInfo,
    LoopConfig,
    SegmentSpec,
    SegmentUpdate,
    StatusNotification,
)
from .segment_runner import SegmentOutcome, SegmentRunner
from .utils.data_uri import decode_data_uri

log = logging.getLogger(__name__)

DOWNLOAD_FILENAME = "imagine_loop_segment_{number:03d}.mp4"


class LoopOrchestrator:
    def __init__(
        self,
        adapter: AutomationAdapter,
        *,
        checkpoint_store: Optional[CheckpointStore] = None,
        broadcaster: Optional[StatusBroadcaster] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.adapter = adapter
        self.checkpoints = CheckpointWriter(checkpoint_store or InMemoryCheckpointStore())
        self.broadcaster = broadcaster or StatusBroadcaster()
        self.state = RunState()
        self._rng = rng
        self._task: Optional[asyncio.Task] = None
        self._interrupted = False

    # -- control surface -------------------------------------------------

    def start(
        self,
        config: LoopConfig,
        segments: Sequence[SegmentSpec],
        *,
        seed_asset: Optional[AssetBlob] = None,
    ) -> asyncio.Task:
        if self.state.is_running or self._busy():
            raise LoopStateError("a run is already in progress")
        if not segments:
            raise LoopStateError("cannot start a run without segments")
        self.state = RunState(
            segments=[
                Segment(
                    id=i,
                    prompt=spec.prompt,
                    input_asset=decode_data_uri(spec.input_image) if spec.input_image else None,
                    input_is_override=bool(spec.input_image),
                )
                for i, spec in enumerate(segments)
            ],
            current_index=0,
            is_running=True,
            config=config.model_copy(deep=True),
            seed_asset=seed_asset,
        )
        log.info("orchestrator.start", extra={"segments": len(segments)})
        telemetry.emit_event("loop.start", {"segments": len(segments)})
        return self._launch()

    def restore(self, record: CheckpointRecord, *, seed_asset: Optional[AssetBlob] = None) -> asyncio.Task:
        """Rehydrate from a checkpoint and resume processing.

        Segments saved as ``working`` or ``error`` restart from ``pending``;
        their input assets are re-derived by the chaining resolver.
        """

        if self.state.is_running or self._busy():
            raise LoopStateError("cannot restore while a run is in progress")
        self.state = RunState.from_checkpoint(record)
        self.state.seed_asset = seed_asset
        if self.state.current_index < 0:
            self.state.current_index = 0 if self.state.segments else -1
        self._clear_pause_marker()
        self.state.is_running = True
        log.info("orchestrator.restore", extra={"current_index": self.state.current_index})
        telemetry.emit_event("loop.restore", {"current_index": self.state.current_index})
        return self._launch()

    def pause(self) -> None:
        """Clear the run flag; in-flight waits unwind within one slice."""

        if not self.state.is_running:
            return
        self.state.is_running = False
        log.info("orchestrator.pause", extra={"current_index": self.state.current_index})
        self._publish(message="Paused")

    def resume(self, updates: Optional[Sequence[SegmentUpdate]] = None) -> Optional[asyncio.Task]:
        if self.state.is_running:
            return self._task
        if not self.state.segments or self.state.current_index < 0:
            raise LoopStateError("nothing to resume")
        self._apply_updates(updates or [])
        self._clear_pause_marker()
        self.state.is_running = True
        log.info("orchestrator.resume", extra={"current_index": self.state.current_index})
        telemetry.emit_event("loop.resume", {"current_index": self.state.current_index})
        if self._busy():
            # The previous task is still unwinding from the pause; it re-enters the queue.
            self._publish(message="Resumed")
            return self._task
        return self._launch()

    def regenerate_segment(self, index: int, cascade: bool = False) -> asyncio.Task:
        if self.state.is_running:
            raise LoopStateError("regenerate is only valid while the run is paused")
        self.state.segment(index)
        if self._busy():
            raise LoopStateError("previous processing has not finished unwinding")
        first_open = self.state.first_unsettled()
        if index > first_open:
            raise LoopStateError(f"segment {first_open} must finish before segment {index} can be regenerated")
        end = len(self.state.segments) if cascade else index + 1
        for i, seg in enumerate(self.state.segments):
            if index <= i < end:
                seg.reset(clear_input=True)
            elif seg.status != DONE and seg.status != ERROR:
                # Interrupted or halted segments outside the range restart from pending.
                seg.reset(clear_input=False)
        self.state.current_index = index
        self.state.last_known_asset = self._latest_output_before(index)
        self.state.is_running = True
        log.info("orchestrator.regenerate", extra={"index": index, "cascade": cascade})
        telemetry.emit_event("loop.regenerate", {"index": index, "cascade": cascade})
        return self._launch()

    def download(self, index: int) -> DownloadInfo:
        segment = self.state.segment(index)
        if segment.status != DONE or not segment.output_asset:
            raise LoopStateError(f"segment {index} has no finished output")
        return DownloadInfo(
            index=index,
            asset_ref=segment.output_asset,
            filename=DOWNLOAD_FILENAME.format(number=index + 1),
        )

    def status(self) -> StatusNotification:
        return self.state.to_notification(checkpoint_saved=not self.checkpoints.dirty)

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        return self.broadcaster.subscribe(listener)

    async def wait_idle(self) -> None:
        """Wait for the current processing task, propagating its failure."""

        if self._task is not None:
            await self._task

    # -- queue processing ------------------------------------------------

    def _launch(self) -> asyncio.Task:
        self._publish()
        self._task = asyncio.get_running_loop().create_task(self._drive(), name="imagine-loop-queue")
        self._task.add_done_callback(_log_task_result)
        return self._task

    def _busy(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _drive(self) -> None:
        while True:
            self._interrupted = False
            await self._process_queue()
            # A resume landed while this task was unwinding a pause.
            if not (self._interrupted and self.state.is_running):
                return

    async def _process_queue(self) -> None:
        state = self.state
        runner = self._build_runner()
        index = state.current_index
        while 0 <= index < len(state.segments):
            state.current_index = index
            if not state.is_running:
                self._interrupted = True
                await self._checkpoint(message="Paused")
                return
            segment = state.segments[index]
            if state.is_settled(segment):
                index += 1
                continue
            if needs_external_resume(segment.status) or is_moderated_status(segment.status):
                segment.reset(clear_input=False)

            result = await runner.run(index)
            if result.outcome is SegmentOutcome.INTERRUPTED:
                self._interrupted = True
                await self._checkpoint(message="Paused")
                return
            if result.outcome is SegmentOutcome.PAUSED:
                return
            if result.outcome is SegmentOutcome.ERROR:
                if not state.config.continue_on_failure:
                    raise SegmentFailedError(index, result.error)
                log.warning("orchestrator.continue_after_failure", extra={"index": index})
            if not state.is_running:
                self._interrupted = True
                return
            if index + 1 < len(state.segments):
                index += 1
                continue
            break

        if state.is_complete():
            await self._finish()
        else:
            state.is_running = False
            await self._checkpoint(message="Queue ended without completing the final segment")

    async def _finish(self) -> None:
        state = self.state
        state.current_index = -1
        state.is_running = False
        await self.checkpoints.clear()
        log.info("orchestrator.complete", extra={"segments": len(state.segments)})
        telemetry.emit_event("loop.complete", {"segments": len(state.segments)})
        self._publish(message="Run complete")

    def _build_runner(self) -> SegmentRunner:
        cfg = self.state.config
        pacer = Pacer(slice_ms=cfg.wait_slice_ms, rng=self._rng)
        detector = AssetArrivalDetector(
            self.adapter,
            pacer,
            patterns=cfg.asset_matchers(),
            poll_interval_ms=cfg.poll_interval_ms,
            stabilization_ms=cfg.stabilization_ms,
        )
        return SegmentRunner(
            self.adapter,
            self.state,
            pacer=pacer,
            detector=detector,
            resolver=ChainingResolver(self.adapter),
            on_transition=self._on_transition,
        )

    async def _on_transition(self, index: int, message: Optional[str]) -> None:
        await self._checkpoint(message=message)

    async def _checkpoint(self, *, message: Optional[str] = None) -> None:
        saved = await self.checkpoints.save(self.state.to_checkpoint())
        self._publish(saved=saved, message=message)

    def _publish(self, *, saved: Optional[bool] = None, message: Optional[str] = None) -> None:
        checkpoint_saved = (not self.checkpoints.dirty) if saved is None else saved
        self.broadcaster.publish(self.state.to_notification(checkpoint_saved=checkpoint_saved, message=message))

    # -- helpers ---------------------------------------------------------

    def _apply_updates(self, updates: Sequence[SegmentUpdate]) -> None:
        cursor = self.state.current_index
        for update in updates:
            if update.index < cursor or update.index >= len(self.state.segments):
                continue
            segment = self.state.segments[update.index]
            if update.prompt is not None and update.prompt.strip():
                segment.prompt = update.prompt.strip()
            if update.input_image:
                segment.set_override(decode_data_uri(update.input_image))

    def _clear_pause_marker(self) -> None:
        index = self.state.current_index
        if 0 <= index < len(self.state.segments):
            segment = self.state.segments[index]
            if needs_external_resume(segment.status) or is_moderated_status(segment.status):
                segment.reset(clear_input=False)

    def _latest_output_before(self, index: int) -> Optional[str]:
        outputs: List[str] = [
            seg.output_asset for seg in self.state.segments[:index] if seg.status == DONE and seg.output_asset
        ]
        return outputs[-1] if outputs else None


def _log_task_result(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.error("orchestrator.run_failed", extra={"error": str(exc)})
        telemetry.emit_event("loop.failed", {"error": str(exc)})


__all__ = ["LoopOrchestrator", "DOWNLOAD_FILENAME"]
