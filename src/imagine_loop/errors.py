"""Closed error taxonomy shared by the adapter boundary and the orchestrator.

Every failure the orchestrator reacts to carries an :class:`ErrorKind`. The
segment runner classifies failures by kind only; message text is for humans.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    UPLOAD_REJECTED = "upload_rejected"
    RATE_LIMITED = "rate_limited"
    MODERATION_BLOCKED = "moderation_blocked"
    MODERATION_LIMIT = "moderation_limit"
    TIMEOUT = "timeout"
    CHAIN_PRECONDITION = "chain_precondition"
    FETCH_ERROR = "fetch_error"
    DECODE_ERROR = "decode_error"
    CHECKPOINT_PERSIST = "checkpoint_persist"
    UNKNOWN = "unknown"


class LoopError(RuntimeError):
    """Base error for imagine_loop failures."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str = "", *, kind: Optional[ErrorKind] = None) -> None:
        super().__init__(message or self.__class__.__name__)
        if kind is not None:
            self.kind = kind


class AdapterNotFound(LoopError):
    """A control or element could not be located on the target surface."""

    kind = ErrorKind.NOT_FOUND


class UploadRejected(LoopError):
    kind = ErrorKind.UPLOAD_REJECTED


class RateLimited(LoopError):
    """The target surface reported a rate limit; the run must halt."""

    kind = ErrorKind.RATE_LIMITED


class ModerationBlocked(LoopError):
    kind = ErrorKind.MODERATION_BLOCKED


class ModerationLimitExceeded(LoopError):
    """Moderation recovery ran out of attempts for one segment."""

    kind = ErrorKind.MODERATION_LIMIT


class DetectionTimeout(LoopError):
    kind = ErrorKind.TIMEOUT


class ChainPreconditionError(LoopError):
    """The previous segment has no output to chain from."""

    kind = ErrorKind.CHAIN_PRECONDITION


class FrameExtractionError(LoopError):
    """Trailing-frame extraction failed while fetching or decoding the asset."""

    kind = ErrorKind.FETCH_ERROR


class CheckpointPersistFailure(LoopError):
    kind = ErrorKind.CHECKPOINT_PERSIST


class LoopStateError(RuntimeError):
    """Raised when a control operation is not valid in the current run state."""


class SegmentFailedError(RuntimeError):
    """A segment exhausted its retries and the run is not allowed to continue."""

    def __init__(self, index: int, cause: BaseException) -> None:
        super().__init__(f"segment {index} failed: {cause}")
        self.index = index
        self.cause = cause


def error_kind(exc: BaseException) -> ErrorKind:
    """Return the kind of ``exc``; anything outside the taxonomy is UNKNOWN."""

    if isinstance(exc, LoopError):
        return exc.kind
    return ErrorKind.UNKNOWN


__all__ = [
    "ErrorKind",
    "LoopError",
    "AdapterNotFound",
    "UploadRejected",
    "RateLimited",
    "ModerationBlocked",
    "ModerationLimitExceeded",
    "DetectionTimeout",
    "ChainPreconditionError",
    "FrameExtractionError",
    "CheckpointPersistFailure",
    "LoopStateError",
    "SegmentFailedError",
    "error_kind",
]
