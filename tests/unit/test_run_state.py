from __future__ import annotations

import pytest

from imagine_loop.adapters.common import AssetBlob
from imagine_loop.run_state import (
    DONE,
    ERROR,
    PAUSED_RATE_LIMIT,
    PENDING,
    WORKING,
    RunState,
    Segment,
    moderated_status,
)
from imagine_loop.schemas import CheckpointRecord, LoopConfig


def _state() -> RunState:
    segments = [
        Segment(id=0, prompt="one", output_asset="blob:a", status=DONE),
        Segment(id=1, prompt="two", output_asset="blob:b", status=WORKING, input_asset=AssetBlob(data=b"x")),
        Segment(id=2, prompt="three", status=ERROR),
        Segment(id=3, prompt="four", status=moderated_status(1, 2)),
        Segment(id=4, prompt="five", status=PAUSED_RATE_LIMIT),
    ]
    return RunState(segments=segments, current_index=1, is_running=True, config=LoopConfig(retry_limit=4))


def test_checkpoint_carries_no_binary_assets() -> None:
    record = _state().to_checkpoint()
    payload = record.model_dump_json()

    assert "input_asset" not in payload
    assert record.current_index == 1
    assert record.config.retry_limit == 4
    assert [seg.status for seg in record.segments][:3] == [DONE, WORKING, ERROR]


def test_from_checkpoint_resets_untrusted_statuses() -> None:
    restored = RunState.from_checkpoint(_state().to_checkpoint())

    assert [seg.status for seg in restored.segments] == [DONE, PENDING, PENDING, PENDING, PAUSED_RATE_LIMIT]
    assert restored.segments[0].output_asset == "blob:a"
    assert restored.segments[1].output_asset is None
    assert all(seg.input_asset is None for seg in restored.segments)
    assert restored.last_known_asset == "blob:a"
    assert restored.is_running is False
    assert restored.config.retry_limit == 4


def test_checkpoint_round_trip_through_json() -> None:
    record = _state().to_checkpoint()
    again = CheckpointRecord.model_validate_json(record.model_dump_json())
    assert again == record


def test_cursor_must_point_inside_segments() -> None:
    record = _state().to_checkpoint().model_dump()
    record["current_index"] = 9
    with pytest.raises(ValueError):
        CheckpointRecord.model_validate(record)
    record["current_index"] = -2
    with pytest.raises(ValueError):
        CheckpointRecord.model_validate(record)


def test_segment_lookup_and_neighbours() -> None:
    state = _state()
    assert state.prior(0) is None
    assert state.next(4) is None
    assert state.working_indices() == [1]
    assert not state.is_complete()
    with pytest.raises(IndexError):
        state.segment(5)


def test_reset_clears_output_and_moderation_count() -> None:
    seg = Segment(id=0, prompt="p", input_asset=AssetBlob(data=b"i"), output_asset="blob:z", status=DONE)
    seg.moderation_attempts = 2
    seg.reset(clear_input=False)
    assert (seg.status, seg.output_asset, seg.moderation_attempts) == (PENDING, None, 0)
    assert seg.input_asset is not None
    seg.reset()
    assert seg.input_asset is None


def test_completion_requires_every_segment_settled() -> None:
    state = RunState(
        segments=[
            Segment(id=0, prompt="one", status=DONE),
            Segment(id=1, prompt="two", status=PENDING),
            Segment(id=2, prompt="three", status=DONE),
        ],
        config=LoopConfig(),
    )
    assert state.first_unsettled() == 1
    assert not state.is_complete()

    state.segments[1].status = ERROR
    assert not state.is_complete()
    state.config = LoopConfig(continue_on_failure=True)
    assert state.first_unsettled() == 3
    assert state.is_complete()
    assert not RunState().is_complete()


def test_override_survives_reset_without_clearing_input() -> None:
    seg = Segment(id=1, prompt="p")
    seg.set_override(AssetBlob(data=b"mine"))
    seg.reset(clear_input=False)
    assert seg.input_is_override and seg.input_asset is not None
    seg.reset()
    assert seg.input_asset is None and not seg.input_is_override
