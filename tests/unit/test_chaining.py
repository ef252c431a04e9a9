from __future__ import annotations

import asyncio

import pytest

from imagine_loop.adapters.common import AssetBlob
from imagine_loop.adapters.stub_adapter import ScriptedSurfaceAdapter
from imagine_loop.chaining import ChainingResolver
from imagine_loop.errors import ChainPreconditionError, FrameExtractionError
from imagine_loop.run_state import DONE, RunState, Segment
from imagine_loop.schemas import LoopConfig

SEED = AssetBlob(data=b"seed-bytes", mime_type="image/png")


def _state(*, reuse: bool = False, seed: AssetBlob | None = None) -> RunState:
    return RunState(
        segments=[Segment(id=i, prompt=f"prompt {i}") for i in range(3)],
        current_index=0,
        is_running=True,
        config=LoopConfig(reuse_seed_asset=reuse),
        seed_asset=seed,
    )


def _resolve(resolver: ChainingResolver, state: RunState, index: int):
    return asyncio.run(resolver.resolve_input_asset(state.segments[index], state.prior(index), state))


def test_override_wins_over_seed_and_chain() -> None:
    state = _state(seed=SEED)
    override = AssetBlob(data=b"override")
    state.segments[1].set_override(override)
    resolver = ChainingResolver(ScriptedSurfaceAdapter())

    assert _resolve(resolver, state, 1) is override


def test_first_segment_uses_seed_or_nothing() -> None:
    resolver = ChainingResolver(ScriptedSurfaceAdapter())
    assert _resolve(resolver, _state(seed=SEED), 0) is SEED
    assert _resolve(resolver, _state(), 0) is None


def test_chains_from_previous_output_and_caches_frame() -> None:
    adapter = ScriptedSurfaceAdapter()
    state = _state(seed=SEED)
    state.segments[0].status = DONE
    state.segments[0].output_asset = "blob:https://grok.com/0001"
    resolver = ChainingResolver(adapter)

    blob = _resolve(resolver, state, 1)

    assert blob is not None
    assert blob.data == b"frame:blob:https://grok.com/0001"
    assert blob.source_ref == "blob:https://grok.com/0001"
    assert state.segments[1].input_asset is blob


def test_missing_previous_output_is_a_chain_precondition_failure() -> None:
    resolver = ChainingResolver(ScriptedSurfaceAdapter())
    with pytest.raises(ChainPreconditionError):
        _resolve(resolver, _state(), 2)


def test_reuse_seed_applies_to_every_segment() -> None:
    state = _state(reuse=True, seed=SEED)
    state.segments[0].output_asset = "blob:https://grok.com/0001"
    resolver = ChainingResolver(ScriptedSurfaceAdapter())

    assert _resolve(resolver, state, 2) is SEED


def test_reuse_without_seed_falls_back_to_last_known_asset() -> None:
    state = _state(reuse=True)
    resolver = ChainingResolver(ScriptedSurfaceAdapter())
    assert _resolve(resolver, state, 1) is None

    state.last_known_asset = "blob:https://grok.com/0007"
    blob = _resolve(resolver, state, 1)
    assert blob is not None and blob.data == b"frame:blob:https://grok.com/0007"


def test_prepare_next_input_attaches_frame_to_following_segment() -> None:
    state = _state()
    resolver = ChainingResolver(ScriptedSurfaceAdapter())

    blob = asyncio.run(resolver.prepare_next_input(state, 0, "blob:https://grok.com/0001"))

    assert blob is not None
    assert state.segments[1].input_asset is blob
    assert asyncio.run(resolver.prepare_next_input(state, 2, "blob:https://grok.com/0003")) is None


def test_prepare_next_input_defers_failures_to_the_next_segment() -> None:
    adapter = ScriptedSurfaceAdapter()
    adapter.fail_next("extract_trailing_frame", FrameExtractionError("decode failed"))
    state = _state()
    resolver = ChainingResolver(adapter)

    assert asyncio.run(resolver.prepare_next_input(state, 0, "blob:https://grok.com/0001")) is None
    assert state.segments[1].input_asset is None

    state.segments[0].output_asset = "blob:https://grok.com/0001"
    assert _resolve(resolver, state, 1).data == b"frame:blob:https://grok.com/0001"


def test_prepare_next_input_keeps_user_override() -> None:
    state = _state()
    override = AssetBlob(data=b"user")
    state.segments[1].set_override(override)
    resolver = ChainingResolver(ScriptedSurfaceAdapter())

    assert asyncio.run(resolver.prepare_next_input(state, 0, "blob:https://grok.com/0001")) is None
    assert state.segments[1].input_asset is override


def test_frame_from_a_replaced_output_is_re_extracted() -> None:
    state = _state()
    resolver = ChainingResolver(ScriptedSurfaceAdapter())
    asyncio.run(resolver.prepare_next_input(state, 0, "blob:https://grok.com/0001"))
    state.segments[0].status = DONE
    state.segments[0].output_asset = "blob:https://grok.com/0004"

    blob = _resolve(resolver, state, 1)

    assert blob.data == b"frame:blob:https://grok.com/0004"
    assert state.segments[1].input_asset is blob
    assert state.segments[1].input_is_override is False


def test_prepare_next_input_refreshes_derived_frame() -> None:
    state = _state()
    resolver = ChainingResolver(ScriptedSurfaceAdapter())
    asyncio.run(resolver.prepare_next_input(state, 0, "blob:https://grok.com/0001"))

    blob = asyncio.run(resolver.prepare_next_input(state, 0, "blob:https://grok.com/0002"))

    assert blob is not None and blob.source_ref == "blob:https://grok.com/0002"
    assert state.segments[1].input_asset is blob
