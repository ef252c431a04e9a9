from __future__ import annotations

import logging
import os
from typing import Any, Callable, Dict, Optional, TypeVar

from fastapi import FastAPI, HTTPException

from imagine_loop.adapters import AutomationAdapter, load_adapter
from imagine_loop.checkpoint import CheckpointStore, FilesystemCheckpointStore, InMemoryCheckpointStore
from imagine_loop.errors import LoopStateError
from imagine_loop.function_tools.loop_control.models import (
    ControlResponse,
    RegenerateRequest,
    ResumeRequest,
    StartRequest,
)
from imagine_loop.orchestrator import LoopOrchestrator
from imagine_loop.schemas import DownloadInfo, LoopConfig, StatusNotification
from imagine_loop.utils.data_uri import load_image

LOG = logging.getLogger("loop_control.entrypoint")
LOG.setLevel(logging.INFO)

T = TypeVar("T")


def make_app(adapter: AutomationAdapter, *, checkpoint_store: Optional[CheckpointStore] = None) -> FastAPI:
    """Build the control surface around a fresh orchestrator."""

    app = FastAPI(title="imagine_loop control")
    orchestrator = LoopOrchestrator(adapter, checkpoint_store=checkpoint_store or InMemoryCheckpointStore())
    app.state.orchestrator = orchestrator

    def _ack() -> Dict[str, Any]:
        return ControlResponse(run=orchestrator.status()).model_dump()

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/status", response_model=StatusNotification)
    def status() -> StatusNotification:
        return orchestrator.status()

    @app.post("/control/start")
    async def control_start(req: StartRequest) -> Dict[str, Any]:
        LOG.info("loop_control.start", extra={"prompts": len(req.prompts), "loops": req.loops})
        seed = _guard(lambda: load_image(req.initial_image)) if req.initial_image else None
        config = _guard(lambda: req.resolve_config(LoopConfig.from_env()))
        _guard(lambda: orchestrator.start(config, req.segment_specs(), seed_asset=seed))
        return _ack()

    @app.post("/control/pause")
    async def control_pause() -> Dict[str, Any]:
        orchestrator.pause()
        return _ack()

    @app.post("/control/resume")
    async def control_resume(req: Optional[ResumeRequest] = None) -> Dict[str, Any]:
        updates = req.segments if req is not None else None
        _guard(lambda: orchestrator.resume(updates))
        return _ack()

    @app.post("/control/regenerate")
    async def control_regenerate(req: RegenerateRequest) -> Dict[str, Any]:
        _guard(lambda: orchestrator.regenerate_segment(req.index, cascade=req.cascade))
        return _ack()

    @app.post("/control/restore")
    async def control_restore() -> Dict[str, Any]:
        record = await orchestrator.checkpoints.load()
        if record is None:
            raise HTTPException(status_code=404, detail="No checkpoint to restore")
        _guard(lambda: orchestrator.restore(record))
        return _ack()

    @app.get("/download", response_model=DownloadInfo)
    def download(index: int) -> DownloadInfo:
        return _guard(lambda: orchestrator.download(index))

    return app


def _guard(fn: Callable[[], T]) -> T:
    try:
        return fn()
    except LoopStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except IndexError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (ValueError, FileNotFoundError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _default_store() -> CheckpointStore:
    path = os.environ.get("IMAGINE_LOOP_CHECKPOINT")
    return FilesystemCheckpointStore(path) if path else InMemoryCheckpointStore()


app = make_app(load_adapter(os.environ.get("IMAGINE_LOOP_ADAPTER", "stub")), checkpoint_store=_default_store())
