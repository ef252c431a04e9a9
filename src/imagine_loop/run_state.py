"""In-memory run state owned by the orchestrator."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from .adapters.common import AssetBlob
from .schemas import (
    CheckpointRecord,
    CheckpointSegment,
    LoopConfig,
    SegmentView,
    StatusNotification,
)

PENDING = "pending"
WORKING = "working"
DONE = "done"
ERROR = "error"
PAUSED_MODERATION = "paused:moderation"
PAUSED_RATE_LIMIT = "paused:rate-limit"
PAUSED_MODERATED_LIMIT = "paused:moderated-limit"

PAUSED_STATUSES = frozenset({PAUSED_MODERATION, PAUSED_RATE_LIMIT, PAUSED_MODERATED_LIMIT})
# Statuses that do not survive a restore; progress made in them is not trusted.
UNTRUSTED_STATUSES = frozenset({WORKING, ERROR})


def moderated_status(attempt: int, limit: int) -> str:
    """Transient label shown while a moderation recovery is in progress."""

    return f"moderated:{attempt}/{limit}"


def is_moderated_status(status: str) -> bool:
    return status.startswith("moderated:")


def needs_external_resume(status: str) -> bool:
    return status in PAUSED_STATUSES


@dataclass
class Segment:
    id: int
    prompt: str
    input_asset: Optional[AssetBlob] = None
    output_asset: Optional[str] = None
    status: str = PENDING
    moderation_attempts: int = 0
    # False when input_asset is a frame derived from the previous output.
    input_is_override: bool = False

    def reset(self, *, clear_input: bool = True) -> None:
        self.status = PENDING
        self.output_asset = None
        self.moderation_attempts = 0
        if clear_input:
            self.input_asset = None
            self.input_is_override = False

    def set_override(self, blob: AssetBlob) -> None:
        self.input_asset = blob
        self.input_is_override = True

    def to_checkpoint(self) -> CheckpointSegment:
        return CheckpointSegment(id=self.id, prompt=self.prompt, output_asset_ref=self.output_asset, status=self.status)

    def to_view(self) -> SegmentView:
        return SegmentView(prompt=self.prompt, status=self.status, output_asset_ref=self.output_asset)


@dataclass
class RunState:
    segments: List[Segment] = field(default_factory=list)
    current_index: int = -1
    is_running: bool = False
    config: LoopConfig = field(default_factory=LoopConfig)
    # Weak reference: the most recent output, used only as a chaining fallback.
    last_known_asset: Optional[str] = None
    seed_asset: Optional[AssetBlob] = None

    def segment(self, index: int) -> Segment:
        if index < 0 or index >= len(self.segments):
            raise IndexError(f"segment index {index} out of range (0..{len(self.segments) - 1})")
        return self.segments[index]

    def prior(self, index: int) -> Optional[Segment]:
        return self.segments[index - 1] if index > 0 else None

    def next(self, index: int) -> Optional[Segment]:
        return self.segments[index + 1] if index + 1 < len(self.segments) else None

    def working_indices(self) -> List[int]:
        return [i for i, seg in enumerate(self.segments) if seg.status == WORKING]

    def is_settled(self, segment: Segment) -> bool:
        """Done, or failed under continue-on-failure."""

        return segment.status == DONE or (segment.status == ERROR and self.config.continue_on_failure)

    def first_unsettled(self) -> int:
        """Index of the first segment still owed work, or ``len(segments)``."""

        for i, seg in enumerate(self.segments):
            if not self.is_settled(seg):
                return i
        return len(self.segments)

    def is_complete(self) -> bool:
        return bool(self.segments) and self.first_unsettled() == len(self.segments)

    def to_checkpoint(self) -> CheckpointRecord:
        return CheckpointRecord(
            segments=[seg.to_checkpoint() for seg in self.segments],
            current_index=self.current_index,
            config=self.config.model_copy(deep=True),
        )

    def to_notification(self, *, checkpoint_saved: bool = False, message: Optional[str] = None) -> StatusNotification:
        return StatusNotification(
            is_running=self.is_running,
            current_index=self.current_index,
            segments=[seg.to_view() for seg in self.segments],
            checkpoint_saved=checkpoint_saved,
            message=message,
        )

    @classmethod
    def from_checkpoint(cls, record: CheckpointRecord) -> "RunState":
        """Rehydrate a stopped run; ``working``/``error`` segments come back ``pending``."""

        segments: List[Segment] = []
        last_known: Optional[str] = None
        for entry in record.segments:
            status = entry.status
            output = entry.output_asset_ref
            if status in UNTRUSTED_STATUSES or is_moderated_status(status):
                status = PENDING
            if status != DONE:
                output = None
            elif output:
                last_known = output
            segments.append(Segment(id=entry.id, prompt=entry.prompt, output_asset=output, status=status))
        return cls(
            segments=segments,
            current_index=record.current_index,
            is_running=False,
            config=record.config.model_copy(deep=True),
            last_known_asset=last_known,
        )


__all__ = [
    "PENDING",
    "WORKING",
    "DONE",
    "ERROR",
    "PAUSED_MODERATION",
    "PAUSED_RATE_LIMIT",
    "PAUSED_MODERATED_LIMIT",
    "PAUSED_STATUSES",
    "moderated_status",
    "is_moderated_status",
    "needs_external_resume",
    "Segment",
    "RunState",
]
