"""Shared helpers for orchestrator-level tests."""

from __future__ import annotations

from typing import Any, List, Optional

from imagine_loop.run_state import PAUSED_STATUSES, WORKING
from imagine_loop.schemas import LoopConfig, StatusNotification

FAST_CONFIG: dict[str, Any] = {
    "timeout_ms": 1_000,
    "poll_interval_ms": 10,
    "stabilization_ms": 0,
    "wait_slice_ms": 5,
    "segment_delay_max_ms": 0,
    "prompt_settle_ms": 0,
    "post_type_pause_ms": 0,
    "action_timeout_ms": 1_000,
    "retry_cooldown_ms": 0,
    "moderation_cooldown_ms": 0,
}


def fast_config(**overrides: Any) -> LoopConfig:
    values = dict(FAST_CONFIG)
    values.update(overrides)
    return LoopConfig(**values)


class StatusRecorder:
    """Subscriber that keeps every notification and checks run-wide invariants."""

    def __init__(self) -> None:
        self.notes: List[StatusNotification] = []
        self.violations: List[str] = []
        self._running_index: Optional[int] = None

    def __call__(self, note: StatusNotification) -> None:
        self.notes.append(note)
        working = [i for i, seg in enumerate(note.segments) if seg.status == WORKING]
        if len(working) > 1:
            self.violations.append(f"several working segments: {working}")
        if note.is_running and any(seg.status in PAUSED_STATUSES for seg in note.segments):
            self.violations.append("paused segment while running")
        if not note.is_running:
            self._running_index = None
        elif self._running_index is not None and note.current_index < self._running_index:
            self.violations.append(f"current_index moved back from {self._running_index} to {note.current_index}")
        else:
            self._running_index = note.current_index

    def statuses(self, index: int) -> List[str]:
        seen: List[str] = []
        for note in self.notes:
            if index < len(note.segments):
                status = note.segments[index].status
                if not seen or seen[-1] != status:
                    seen.append(status)
        return seen

    @property
    def messages(self) -> List[str]:
        return [note.message for note in self.notes if note.message]
