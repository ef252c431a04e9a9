from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .adapters import load_adapter
from .checkpoint import CheckpointStore, FilesystemCheckpointStore, InMemoryCheckpointStore
from .errors import SegmentFailedError
from .orchestrator import LoopOrchestrator
from .schemas import CheckpointRecord, JobSpec, LoopConfig, StatusNotification
from .utils.data_uri import load_image


def load_job(path: Path) -> JobSpec:
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    job = JobSpec.model_validate(data)
    if job.initial_image and not job.initial_image.startswith("data:"):
        image_path = Path(job.initial_image)
        if not image_path.is_absolute():
            job.initial_image = str(path.parent / image_path)
    return job


def _print_status(note: StatusNotification) -> None:
    statuses = " ".join(f"[{i + 1}:{seg.status}]" for i, seg in enumerate(note.segments))
    suffix = f" {note.message}" if note.message else ""
    print(f"running={note.is_running} index={note.current_index} {statuses}{suffix}")


def _store(checkpoint: Optional[str]) -> CheckpointStore:
    return FilesystemCheckpointStore(checkpoint) if checkpoint else InMemoryCheckpointStore()


async def _drive(orchestrator: LoopOrchestrator, launch) -> int:
    orchestrator.subscribe(_print_status)
    launch()
    try:
        await orchestrator.wait_idle()
    except SegmentFailedError as exc:
        print(f"Run stopped: {exc}")
        return 1
    finally:
        close = getattr(orchestrator.adapter, "close", None)
        if callable(close):
            close()
    state = orchestrator.state
    if state.current_index == -1 and not state.is_running:
        print("Run complete")
        return 0
    print("Run halted; resume from the checkpoint once the surface is ready")
    return 2


def run_job(job_path: Path, adapter_spec: str, checkpoint: Optional[str] = None) -> int:
    job = load_job(job_path)
    config = job.resolve_config(LoopConfig.from_env())
    seed = load_image(job.initial_image) if job.initial_image else None
    orchestrator = LoopOrchestrator(load_adapter(adapter_spec), checkpoint_store=_store(checkpoint))
    return asyncio.run(
        _drive(orchestrator, lambda: orchestrator.start(config, job.segment_specs(), seed_asset=seed))
    )


def resume_job(checkpoint: str, adapter_spec: str, initial_image: Optional[str] = None) -> int:
    store = FilesystemCheckpointStore(checkpoint)
    record = asyncio.run(store.load())
    if record is None:
        print(f"No checkpoint at {checkpoint}")
        return 1
    seed = load_image(initial_image) if initial_image else None
    orchestrator = LoopOrchestrator(load_adapter(adapter_spec), checkpoint_store=store)
    return asyncio.run(_drive(orchestrator, lambda: orchestrator.restore(record, seed_asset=seed)))


def summarize_checkpoint(record: CheckpointRecord) -> Dict[str, Any]:
    return {
        "current_index": record.current_index,
        "segments": [
            {"id": seg.id, "status": seg.status, "prompt": seg.prompt, "output_asset_ref": seg.output_asset_ref}
            for seg in record.segments
        ],
        "done": sum(1 for seg in record.segments if seg.status == "done"),
        "total": len(record.segments),
    }


def show_checkpoint(path: str) -> int:
    record = asyncio.run(FilesystemCheckpointStore(path).load())
    if record is None:
        print(f"No checkpoint at {path}")
        return 1
    print(json.dumps(summarize_checkpoint(record), indent=2))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    import argparse

    p = argparse.ArgumentParser(prog="imagine-loop")
    p.add_argument("--log-level", default="WARNING")
    sub = p.add_subparsers(dest="command", required=True)

    run_p = sub.add_parser("run", help="Start a run from a YAML/JSON job file")
    run_p.add_argument("job", help="Path to job file")
    run_p.add_argument("--adapter", default="stub", help="'stub' or 'package.module:factory'")
    run_p.add_argument("--checkpoint", help="Checkpoint JSON path")

    resume_p = sub.add_parser("resume", help="Restore a run from its checkpoint")
    resume_p.add_argument("--checkpoint", required=True)
    resume_p.add_argument("--adapter", default="stub")
    resume_p.add_argument("--initial-image", help="Seed image (path or data URI)")

    show_p = sub.add_parser("show-checkpoint", help="Print a checkpoint summary")
    show_p.add_argument("path")

    args = p.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper())

    if args.command == "run":
        return run_job(Path(args.job), args.adapter, args.checkpoint)
    if args.command == "resume":
        return resume_job(args.checkpoint, args.adapter, args.initial_image)
    return show_checkpoint(args.path)


if __name__ == "__main__":
    raise SystemExit(main())
