"""Common types for automation adapters."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Iterable, Optional

from typing_extensions import Protocol, runtime_checkable

PROMPT_INPUT = "prompt_input"
ASSET_UPLOAD = "asset_upload"

SUBMIT_LABELS = ("make video", "send", "generate")
RETRY_LABELS = ("retry", "try again", "regenerate")
ENHANCE_LABELS = ("upscale", "enhance")

LabelPredicate = Callable[[str], bool]


@dataclass(frozen=True)
class AssetBlob:
    """Binary asset held in memory. Never written to a checkpoint."""

    data: bytes = field(repr=False)
    mime_type: str = "image/jpeg"
    source_ref: Optional[str] = None

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class PolicyScan:
    rate_limited: bool = False
    moderated: bool = False

    @property
    def blocked(self) -> bool:
        return self.rate_limited or self.moderated


def label_matches(labels: Iterable[str]) -> LabelPredicate:
    """Build a predicate matching a control label exactly, case-insensitively."""

    wanted = {label.strip().lower() for label in labels}

    def _predicate(label: str) -> bool:
        return (label or "").strip().lower() in wanted

    return _predicate


@runtime_checkable
class AutomationAdapter(Protocol):
    """Operations the orchestrator consumes. All of them are coroutines.

    Failures are reported with :mod:`imagine_loop.errors` types: ``AdapterNotFound``
    when a control is missing, ``UploadRejected`` when the surface refuses an
    upload and ``FrameExtractionError`` when the trailing frame cannot be
    fetched or decoded.
    """

    async def type_text(self, target: str, text: str) -> None:
        ...

    async def click_control(self, target: str) -> None:
        ...

    async def upload_asset(self, target: str, blob: AssetBlob) -> None:
        ...

    async def locate_and_click(self, label_predicate: LabelPredicate) -> None:
        ...

    async def list_visible_assets(self) -> Iterable[str]:
        ...

    async def scan_for_policy_block(self) -> PolicyScan:
        ...

    async def extract_trailing_frame(self, asset_ref: str) -> AssetBlob:
        ...


def mutation_source(adapter: AutomationAdapter) -> Optional[Callable[[], AsyncIterator[None]]]:
    """Return the adapter's optional ``mutation_events`` factory, if it has one."""

    factory = getattr(adapter, "mutation_events", None)
    return factory if callable(factory) else None


__all__ = [
    "PROMPT_INPUT",
    "ASSET_UPLOAD",
    "SUBMIT_LABELS",
    "RETRY_LABELS",
    "ENHANCE_LABELS",
    "AssetBlob",
    "PolicyScan",
    "AutomationAdapter",
    "LabelPredicate",
    "label_matches",
    "mutation_source",
]
