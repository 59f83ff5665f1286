"""Qt glue: tunnel events as signals, supervisor calls off the GUI thread."""

from __future__ import annotations

import logging
from typing import Callable

from PyQt6.QtCore import QObject, QRunnable, pyqtSignal

from proxytun_client.core.errors import AppError
from proxytun_client.core.models import (
    ConnectionEvent,
    ExternalIpChangedEvent,
    ForwarderCrashEvent,
    HealthEvent,
    LeakTestEvent,
    ProgressEvent,
)

logger = logging.getLogger(__name__)


class QtEventSink(QObject):
    """Event sink for TunnelSupervisor; signals are queued onto the receiver's thread."""

    progress = pyqtSignal(str, str, int)
    connection_changed = pyqtSignal(object)
    health_changed = pyqtSignal(object)
    external_ip_changed = pyqtSignal(str)
    leak_test_finished = pyqtSignal(object)
    forwarder_crashed = pyqtSignal(object)

    def __call__(self, event: object) -> None:
        if isinstance(event, ProgressEvent):
            self.progress.emit(event.phase, event.message, event.progress_percent)
        elif isinstance(event, ConnectionEvent):
            self.connection_changed.emit(event)
        elif isinstance(event, HealthEvent):
            self.health_changed.emit(event)
        elif isinstance(event, ExternalIpChangedEvent):
            self.external_ip_changed.emit(event.external_ip)
        elif isinstance(event, LeakTestEvent):
            self.leak_test_finished.emit(event.report)
        elif isinstance(event, ForwarderCrashEvent):
            self.forwarder_crashed.emit(event)
        else:
            logger.debug("Unhandled event type %s", type(event).__name__)


class SupervisorWorkerSignals(QObject):
    result = pyqtSignal(object)
    error = pyqtSignal(str)


class SupervisorWorker(QRunnable):
    """Run one blocking supervisor call (connect, disconnect, leak test) on the pool."""

    def __init__(self, fn: Callable[[], object]) -> None:
        super().__init__()
        self.fn = fn
        self.signals = SupervisorWorkerSignals()

    def run(self) -> None:
        try:
            payload = self.fn()
        except AppError as exc:
            self.signals.error.emit(exc.describe())
            return
        except Exception as exc:  # noqa: BLE001 - surface to the UI instead of the pool
            logger.exception("Supervisor worker failed")
            self.signals.error.emit(str(exc))
            return
        self.signals.result.emit(payload)
