from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .utils.env import env_flag, env_int, prefixed_values

# Inter-segment pacing draws from [ratio * max, max] to mimic irregular cadence.
SEGMENT_DELAY_MIN_RATIO = 0.33


class LoopConfig(BaseModel):
    """Resolved run options. Persisted verbatim inside every checkpoint."""

    model_config = ConfigDict(extra="forbid")

    timeout_ms: int = Field(default=30_000, gt=0)
    poll_interval_ms: int = Field(default=1_000, gt=0)
    stabilization_ms: int = Field(default=2_000, ge=0)
    wait_slice_ms: int = Field(default=100, gt=0)
    segment_delay_max_ms: int = Field(default=60_000, ge=0)
    prompt_settle_ms: int = Field(default=2_000, ge=0)
    post_type_pause_ms: int = Field(default=1_000, ge=0)
    action_timeout_ms: int = Field(default=30_000, gt=0)
    retry_limit: int = Field(default=2, ge=0)
    retry_cooldown_ms: int = Field(default=5_000, ge=0)
    moderation_retry_limit: int = Field(default=2, ge=0)
    moderation_cooldown_ms: int = Field(default=10_000, ge=0)
    pause_on_moderation: bool = False
    continue_on_failure: bool = False
    reuse_seed_asset: bool = False
    enhance_quality: bool = False
    valid_asset_patterns: List[str] = Field(
        default_factory=lambda: [r"^blob:", r"video\.twimg\.com", r"grok\.com"]
    )

    @field_validator("valid_asset_patterns")
    @classmethod
    def _compile_patterns(cls, patterns: List[str]) -> List[str]:
        if not patterns:
            raise ValueError("valid_asset_patterns must contain at least one pattern")
        for pattern in patterns:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"invalid asset pattern {pattern!r}: {exc}") from exc
        return patterns

    @classmethod
    def from_env(cls, env: Optional[Dict[str, str]] = None, *, base: Optional["LoopConfig"] = None) -> "LoopConfig":
        """Overlay ``IMAGINE_LOOP_<FIELD>`` variables on ``base`` (or defaults)."""

        values = (base or cls()).model_dump()
        for key, raw in prefixed_values(env).items():
            if key not in cls.model_fields:
                continue
            current = values[key]
            if isinstance(current, bool):
                values[key] = env_flag(raw, default=current)
            elif isinstance(current, int):
                values[key] = env_int(raw, default=current)
            elif isinstance(current, list):
                values[key] = [item.strip() for item in raw.split(",") if item.strip()]
        return cls.model_validate(values)

    def asset_matchers(self) -> List[re.Pattern[str]]:
        return [re.compile(pattern) for pattern in self.valid_asset_patterns]


class SegmentSpec(BaseModel):
    """Caller-supplied description of one segment."""

    prompt: str = Field(..., min_length=1)
    input_image: Optional[str] = Field(default=None, description="Optional data URI used as an explicit override")


class SegmentUpdate(BaseModel):
    """Edits applied on resume to the current or a future segment."""

    index: int = Field(..., ge=0)
    prompt: Optional[str] = None
    input_image: Optional[str] = None


class JobSpec(BaseModel):
    """Job file accepted by the CLI and the START control call."""

    prompts: List[str] = Field(..., min_length=1)
    loops: Optional[int] = Field(default=None, ge=1)
    initial_image: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0, description="Asset-arrival timeout in seconds")
    config: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("prompts")
    @classmethod
    def _strip_prompts(cls, prompts: List[str]) -> List[str]:
        cleaned = [prompt.strip() for prompt in prompts]
        if any(not prompt for prompt in cleaned):
            raise ValueError("prompts must be non-empty strings")
        return cleaned

    def resolve_config(self, base: Optional[LoopConfig] = None) -> LoopConfig:
        values = (base or LoopConfig()).model_dump()
        values.update(self.config)
        if self.timeout is not None:
            values["timeout_ms"] = int(self.timeout * 1000)
        return LoopConfig.model_validate(values)

    def segment_specs(self) -> List[SegmentSpec]:
        return build_segments(self.prompts, self.loops)


def build_prompt_sequence(prompts: List[str], loops: Optional[int] = None) -> List[str]:
    """Cycle ``prompts`` until ``loops`` entries exist (defaults to one pass)."""

    if not prompts:
        raise ValueError("at least one prompt is required")
    total = loops if loops is not None else len(prompts)
    return [prompts[i % len(prompts)] for i in range(total)]


def build_segments(prompts: List[str], loops: Optional[int] = None) -> List[SegmentSpec]:
    return [SegmentSpec(prompt=prompt) for prompt in build_prompt_sequence(prompts, loops)]


class CheckpointSegment(BaseModel):
    id: int
    prompt: str
    output_asset_ref: Optional[str] = None
    status: str = "pending"


class CheckpointRecord(BaseModel):
    """Persisted, resumable snapshot of a run. Binary assets are never included."""

    segments: List[CheckpointSegment]
    current_index: int = Field(..., ge=-1)
    config: LoopConfig

    @model_validator(mode="after")
    def _check_cursor(self) -> "CheckpointRecord":
        if self.current_index >= len(self.segments):
            raise ValueError("current_index must point inside segments or be -1")
        return self


class SegmentView(BaseModel):
    prompt: str
    status: str
    output_asset_ref: Optional[str] = None


class StatusNotification(BaseModel):
    """Emitted on every state change."""

    is_running: bool
    current_index: int
    segments: List[SegmentView]
    checkpoint_saved: bool = False
    message: Optional[str] = None


class DownloadInfo(BaseModel):
    index: int
    asset_ref: str
    filename: str


__all__ = [
    "SEGMENT_DELAY_MIN_RATIO",
    "LoopConfig",
    "SegmentSpec",
    "SegmentUpdate",
    "JobSpec",
    "build_prompt_sequence",
    "build_segments",
    "CheckpointSegment",
    "CheckpointRecord",
    "SegmentView",
    "StatusNotification",
    "DownloadInfo",
]
