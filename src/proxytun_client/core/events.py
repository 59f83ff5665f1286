"""Event delivery to UI and session-tracking collaborators."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Callable

logger = logging.getLogger(__name__)

EventSink = Callable[[object], None]


def deliver(sink: EventSink | None, event: object) -> None:
    """Best-effort delivery; a failing sink never affects tunnel state."""
    if sink is None:
        return
    try:
        sink(event)
    except Exception:  # noqa: BLE001 - collaborator code
        logger.exception("Event sink failed for %s", type(event).__name__)


class ThreadedEventSink:
    """Queue events and hand them to `target` from a daemon thread."""

    _STOP = object()

    def __init__(self, target: EventSink, *, max_pending: int = 1000) -> None:
        self._target = target
        self._queue: queue.Queue[object] = queue.Queue(maxsize=max_pending)
        self._thread = threading.Thread(
            target=self._pump, name="proxytun-events", daemon=True
        )
        self._thread.start()

    def __call__(self, event: object) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.warning("Event queue full, dropping %s", type(event).__name__)

    def close(self, timeout_s: float = 2.0) -> None:
        try:
            self._queue.put(self._STOP, timeout=timeout_s)
        except queue.Full:
            logger.warning("Event queue full while closing")
            return
        self._thread.join(timeout_s)

    def _pump(self) -> None:
        while True:
            event = self._queue.get()
            if event is self._STOP:
                return
            deliver(self._target, event)
