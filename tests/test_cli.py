from __future__ import annotations

import asyncio
import json
from pathlib import Path

import yaml

from imagine_loop import cli
from imagine_loop.checkpoint import FilesystemCheckpointStore
from imagine_loop.run_state import DONE, WORKING, RunState, Segment
from imagine_loop.schemas import LoopConfig
from tests.unit.utils import FAST_CONFIG


def _write_job(tmp_path: Path, **extra) -> Path:
    job = {"prompts": ["a fox runs", "the fox jumps"], "config": FAST_CONFIG}
    job.update(extra)
    path = tmp_path / "job.yaml"
    path.write_text(yaml.safe_dump(job), encoding="utf-8")
    return path


def test_run_with_stub_adapter_completes_and_clears_checkpoint(tmp_path: Path, capsys) -> None:
    checkpoint = tmp_path / "loop.json"
    job = _write_job(tmp_path, loops=3)

    rc = cli.main(["run", str(job), "--adapter", "stub", "--checkpoint", str(checkpoint)])

    out = capsys.readouterr().out
    assert rc == 0
    assert "Run complete" in out
    assert "[3:done]" in out
    assert not checkpoint.exists()


def test_job_relative_image_path_is_resolved_against_job_file(tmp_path: Path) -> None:
    (tmp_path / "seed.png").write_bytes(b"png")
    job = cli.load_job(_write_job(tmp_path, initial_image="seed.png"))
    assert job.initial_image == str(tmp_path / "seed.png")


def _saved_checkpoint(path: Path) -> None:
    state = RunState(
        segments=[
            Segment(id=0, prompt="a fox runs", output_asset="blob:https://grok.com/0001", status=DONE),
            Segment(id=1, prompt="the fox jumps", status=WORKING),
        ],
        current_index=1,
        config=LoopConfig(**FAST_CONFIG),
    )
    asyncio.run(FilesystemCheckpointStore(path).save(state.to_checkpoint()))


def test_show_checkpoint_prints_summary(tmp_path: Path, capsys) -> None:
    path = tmp_path / "loop.json"
    _saved_checkpoint(path)

    assert cli.main(["show-checkpoint", str(path)]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["current_index"] == 1
    assert summary["done"] == 1 and summary["total"] == 2
    assert summary["segments"][1]["status"] == "working"

    assert cli.main(["show-checkpoint", str(tmp_path / "missing.json")]) == 1


def test_resume_restores_from_checkpoint(tmp_path: Path, capsys) -> None:
    path = tmp_path / "loop.json"
    _saved_checkpoint(path)

    rc = cli.main(["resume", "--checkpoint", str(path), "--adapter", "stub"])

    assert rc == 0
    assert "Run complete" in capsys.readouterr().out
    assert not path.exists()


def test_adapter_factory_path_is_imported(tmp_path: Path) -> None:
    from imagine_loop.adapters import ScriptedSurfaceAdapter, load_adapter

    adapter = load_adapter("imagine_loop.adapters.stub_adapter:build_stub_adapter")
    assert isinstance(adapter, ScriptedSurfaceAdapter)
    try:
        load_adapter("no-colon-here")
    except ValueError as exc:
        assert "module:factory" in str(exc)
    else:
        raise AssertionError("expected ValueError")
