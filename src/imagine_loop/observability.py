from __future__ import annotations

import logging
from typing import Callable, List

from . import telemetry
from .schemas import StatusNotification

log = logging.getLogger(__name__)

StatusListener = Callable[[StatusNotification], None]


class StatusBroadcaster:
    """Fan status notifications out to subscribers (dashboards, message buses).

    Every notification is also recorded as a ``loop.status`` telemetry event.
    A failing listener is logged and skipped; it never stops the run.
    """

    def __init__(self) -> None:
        self._listeners: List[StatusListener] = []
        self.last: StatusNotification | None = None

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, notification: StatusNotification) -> None:
        self.last = notification
        telemetry.emit_event("loop.status", notification.model_dump())
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception:
                log.exception("observability.listener_failed", extra={"listener": repr(listener)})


__all__ = ["StatusBroadcaster", "StatusListener"]
