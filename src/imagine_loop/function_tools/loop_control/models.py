"""Typed request/response envelopes for the loop_control HTTP surface."""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from imagine_loop.schemas import JobSpec, SegmentUpdate, StatusNotification

__all__ = [
    "StartRequest",
    "ResumeRequest",
    "RegenerateRequest",
    "ControlResponse",
]


class StartRequest(JobSpec):
    """START payload: prompts (cycled over ``loops``), optional seed image and config."""


class ResumeRequest(BaseModel):
    segments: Optional[List[SegmentUpdate]] = Field(
        default=None, description="Edits for the current or later segments; earlier entries are ignored"
    )


class RegenerateRequest(BaseModel):
    index: int = Field(..., ge=0)
    cascade: bool = False


class ControlResponse(BaseModel):
    status: Literal["acknowledged"] = "acknowledged"
    run: StatusNotification
