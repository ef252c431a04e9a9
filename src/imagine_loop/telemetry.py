from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Dict, List, Optional

log = logging.getLogger(__name__)

TELEMETRY_LOG_ENV = "IMAGINE_LOOP_TELEMETRY_LOG"

_EVENTS: List[Dict[str, Any]] = []


def emit_event(name: str, payload: Optional[Dict[str, Any]] = None) -> None:
    """Record a telemetry event in-process and optionally append it to a JSONL file.

    Tests inspect `get_events()` to verify expected emissions. File output is
    best-effort and never raises into the run.
    """
    ev: Dict[str, Any] = {"name": name, "ts": time.time(), "payload": payload or {}}
    _EVENTS.append(ev)
    log_path = os.environ.get(TELEMETRY_LOG_ENV)
    if log_path:
        try:
            with open(log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(ev, default=str) + "\n")
        except OSError:
            log.warning("telemetry.write_failed", extra={"path": log_path}, exc_info=True)


def get_events(name: Optional[str] = None) -> List[Dict[str, Any]]:
    """Return a copy of recorded events, optionally filtered by name."""
    if name is None:
        return list(_EVENTS)
    return [ev for ev in _EVENTS if ev["name"] == name]


def clear_events() -> None:
    _EVENTS.clear()


__all__ = ["TELEMETRY_LOG_ENV", "emit_event", "get_events", "clear_events"]
