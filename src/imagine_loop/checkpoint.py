"""Checkpoint persistence for resumable runs.

Only :class:`~imagine_loop.schemas.CheckpointRecord` payloads are stored;
binary assets never reach the store.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from typing_extensions import Protocol

from . import retry, telemetry
from .errors import CheckpointPersistFailure
from .schemas import CheckpointRecord

log = logging.getLogger(__name__)


class CheckpointStore(Protocol):
    async def save(self, record: CheckpointRecord) -> None:
        ...

    async def load(self) -> Optional[CheckpointRecord]:
        ...

    async def clear(self) -> None:
        ...


class InMemoryCheckpointStore:
    """Keeps the serialized record in memory. Used by tests and the HTTP surface default."""

    def __init__(self) -> None:
        self.payload: Optional[str] = None
        self.saves = 0

    async def save(self, record: CheckpointRecord) -> None:
        self.payload = record.model_dump_json()
        self.saves += 1

    async def load(self) -> Optional[CheckpointRecord]:
        if self.payload is None:
            return None
        return CheckpointRecord.model_validate_json(self.payload)

    async def clear(self) -> None:
        self.payload = None


class FilesystemCheckpointStore:
    """JSON file store with atomic replace; disk I/O runs off the event loop."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path).expanduser()

    async def save(self, record: CheckpointRecord) -> None:
        await asyncio.to_thread(_atomic_write_json, self.path, record.model_dump(mode="json"))

    async def load(self) -> Optional[CheckpointRecord]:
        return await asyncio.to_thread(self._load_sync)

    async def clear(self) -> None:
        await asyncio.to_thread(self._clear_sync)

    def _load_sync(self) -> Optional[CheckpointRecord]:
        if not self.path.exists():
            return None
        return CheckpointRecord.model_validate(json.loads(self.path.read_text(encoding="utf-8")))

    def _clear_sync(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


def _atomic_write_json(path: Path, obj: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    data = json.dumps(obj, indent=2, ensure_ascii=False)
    fd, tmp_path = tempfile.mkstemp(prefix=".checkpoint-", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_file:
            tmp_file.write(data)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
        os.replace(tmp_path, str(path))
        tmp_path = None
    finally:
        if tmp_path is not None and os.path.exists(tmp_path):
            os.remove(tmp_path)


class CheckpointWriter:
    """Persists records with bounded retry and remembers unsaved state.

    A failed write never touches in-memory run state. The writer stays dirty
    until a later write succeeds, which happens on the next transition.
    """

    def __init__(self, store: CheckpointStore, *, attempts: int = 3, backoff_s: float = 0.05) -> None:
        self.store = store
        self.attempts = attempts
        self.backoff_s = backoff_s
        self.dirty = False

    async def save(self, record: CheckpointRecord) -> bool:
        try:
            await retry.retry_async(
                lambda: self.store.save(record),
                attempts=self.attempts,
                backoff_fn=retry.exponential_backoff(base=self.backoff_s, factor=2.0, jitter=0.0),
                on_retry=_log_retry,
            )
        except Exception as exc:
            self.dirty = True
            failure = CheckpointPersistFailure(f"checkpoint write failed after {self.attempts} attempts: {exc}")
            log.warning("checkpoint.persist_failed", extra={"error": str(failure)})
            telemetry.emit_event("checkpoint.persist_failed", {"error": str(exc), "kind": failure.kind.value})
            return False
        self.dirty = False
        return True

    async def clear(self) -> bool:
        try:
            await self.store.clear()
        except Exception as exc:
            log.warning("checkpoint.clear_failed", extra={"error": str(exc)})
            return False
        self.dirty = False
        return True

    async def load(self) -> Optional[CheckpointRecord]:
        return await self.store.load()


def _log_retry(attempt: int, exc: Exception) -> None:
    log.info("checkpoint.retry", extra={"attempt": attempt, "error": str(exc)})


__all__ = [
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "FilesystemCheckpointStore",
    "CheckpointWriter",
]
