"""Decide which input asset each segment is generated from.

Priority, highest first:

1. an asset already attached to the segment: a user override, or a trailing
   frame extracted from the previous segment's current output (frames left
   over from an output that was since regenerated are dropped);
2. the run-level seed asset, for the first segment or when seed reuse is on;
3. with seed reuse on but no seed available, the trailing frame of the last
   known output.

When seed reuse is off, every segment after the first chains from the
previous segment's output. A missing previous output is fatal for the
segment (``ChainPreconditionError``).
"""
from __future__ import annotations

import logging
from typing import Optional

from .adapters.common import AssetBlob, AutomationAdapter
from .errors import ChainPreconditionError
from .run_state import RunState, Segment

log = logging.getLogger(__name__)


class ChainingResolver:
    def __init__(self, adapter: AutomationAdapter) -> None:
        self.adapter = adapter

    async def resolve_input_asset(
        self,
        segment: Segment,
        prior: Optional[Segment],
        state: RunState,
    ) -> Optional[AssetBlob]:
        if segment.input_asset is not None:
            if segment.input_is_override or _derived_from(segment.input_asset, prior):
                return segment.input_asset
            log.info("chaining.stale_frame_dropped", extra={"segment_id": segment.id})
            segment.input_asset = None

        first_in_run = prior is None
        if first_in_run or state.config.reuse_seed_asset:
            if state.seed_asset is not None or first_in_run:
                return state.seed_asset
            if state.last_known_asset:
                log.info("chaining.last_known_fallback", extra={"segment_id": segment.id})
                return await self._extract(state.last_known_asset)
            return None

        if prior.output_asset is None:
            raise ChainPreconditionError(f"segment {prior.id} has no output to chain segment {segment.id} from")
        # Proactive extraction failed or was skipped earlier; retry it now.
        blob = await self._extract(prior.output_asset)
        segment.input_asset = blob
        segment.input_is_override = False
        return blob

    async def prepare_next_input(self, state: RunState, index: int, output_ref: str) -> Optional[AssetBlob]:
        """Best-effort extraction of the next segment's input from ``output_ref``.

        Skipped when seed reuse is on or the next segment carries an override.
        Extraction failures are logged and left for the next segment to retry.
        """

        if state.config.reuse_seed_asset:
            return None
        upcoming = state.next(index)
        if upcoming is None or upcoming.input_is_override:
            return None
        try:
            blob = await self._extract(output_ref)
        except Exception as exc:
            log.warning(
                "chaining.proactive_extract_deferred",
                extra={"segment_id": upcoming.id, "asset_ref": output_ref, "error": str(exc)},
            )
            return None
        upcoming.input_asset = blob
        upcoming.input_is_override = False
        return blob

    async def _extract(self, asset_ref: str) -> AssetBlob:
        blob = await self.adapter.extract_trailing_frame(asset_ref)
        if blob.source_ref != asset_ref:
            blob = AssetBlob(data=blob.data, mime_type=blob.mime_type, source_ref=asset_ref)
        return blob


def _derived_from(blob: AssetBlob, prior: Optional[Segment]) -> bool:
    return prior is not None and prior.output_asset is not None and blob.source_ref == prior.output_asset


__all__ = ["ChainingResolver"]
