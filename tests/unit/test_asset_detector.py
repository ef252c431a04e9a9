from __future__ import annotations

import asyncio
import time

import pytest

from imagine_loop import telemetry
from imagine_loop.adapters.common import SUBMIT_LABELS, label_matches
from imagine_loop.adapters.stub_adapter import ScriptedSurfaceAdapter
from imagine_loop.asset_detector import AssetArrivalDetector
from imagine_loop.errors import DetectionTimeout, ModerationBlocked, RateLimited
from imagine_loop.pacing import Pacer
from imagine_loop.schemas import LoopConfig

OLD_ASSET = "blob:https://grok.com/old"


def _detector(adapter: ScriptedSurfaceAdapter, *, poll_interval_ms: int = 10) -> AssetArrivalDetector:
    return AssetArrivalDetector(
        adapter,
        Pacer(slice_ms=5),
        patterns=LoopConfig().asset_matchers(),
        poll_interval_ms=poll_interval_ms,
        stabilization_ms=0,
    )


def test_poll_finds_new_asset_and_ignores_excluded() -> None:
    adapter = ScriptedSurfaceAdapter(initial_assets=[OLD_ASSET], emit_mutations=False)
    detector = _detector(adapter)

    async def _exercise():
        exclusion = await detector.snapshot()
        asyncio.get_running_loop().call_later(0.03, adapter.visible_assets.append, "blob:https://grok.com/new")
        return await detector.await_new_asset(1_000, exclusion, lambda: True)

    assert asyncio.run(_exercise()) == "blob:https://grok.com/new"
    accepted = telemetry.get_events("detector.asset_accepted")
    assert accepted and accepted[-1]["payload"]["asset_ref"] == "blob:https://grok.com/new"


def test_refs_outside_allowed_patterns_are_ignored() -> None:
    adapter = ScriptedSurfaceAdapter(initial_assets=["https://example.com/clip.mp4", ""], emit_mutations=False)
    detector = _detector(adapter)

    with pytest.raises(DetectionTimeout):
        asyncio.run(detector.await_new_asset(60, frozenset(), lambda: True))


def test_mutation_watch_beats_slow_poll() -> None:
    adapter = ScriptedSurfaceAdapter(latency_ms=20)
    detector = _detector(adapter, poll_interval_ms=5_000)

    async def _exercise():
        exclusion = await detector.snapshot()
        await adapter.locate_and_click(label_matches(SUBMIT_LABELS))
        started = time.monotonic()
        ref = await detector.await_new_asset(3_000, exclusion, lambda: True)
        return ref, time.monotonic() - started

    ref, elapsed = asyncio.run(_exercise())
    assert ref == "blob:https://grok.com/0001"
    assert elapsed < 1.0


def test_policy_indicators_raise_before_assets_are_considered() -> None:
    adapter = ScriptedSurfaceAdapter(["rate_limit"], emit_mutations=False)
    adapter.visible_assets.append("blob:https://grok.com/late")
    adapter.rate_limited = True
    detector = _detector(adapter)
    with pytest.raises(RateLimited):
        asyncio.run(detector.await_new_asset(1_000, frozenset(), lambda: True))

    adapter.rate_limited = False
    adapter.moderated = True
    with pytest.raises(ModerationBlocked):
        asyncio.run(detector.await_new_asset(1_000, frozenset(), lambda: True))


def test_timeout_raises_detection_timeout() -> None:
    adapter = ScriptedSurfaceAdapter(emit_mutations=False)
    detector = _detector(adapter)
    with pytest.raises(DetectionTimeout):
        asyncio.run(detector.await_new_asset(50, frozenset(), lambda: True))


def test_cleared_run_flag_ends_detection_with_none() -> None:
    adapter = ScriptedSurfaceAdapter()
    detector = _detector(adapter, poll_interval_ms=1_000)
    state = {"running": True}

    async def _exercise():
        asyncio.get_running_loop().call_later(0.02, state.update, {"running": False})
        started = time.monotonic()
        ref = await detector.await_new_asset(5_000, frozenset(), lambda: state["running"])
        return ref, time.monotonic() - started

    ref, elapsed = asyncio.run(_exercise())
    assert ref is None
    assert elapsed < 1.0
    assert adapter._subscribers == []
