"""Deadlines and cancellation for sequenced OS operations."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, TypeVar

from proxytun_client.core.errors import AppError, OperationCancelledError, PhaseTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationContext:
    """A phase budget shared by every command issued inside that phase.

    Child contexts get their own, shorter budget but share the cancel event,
    so cancelling the parent stops whatever the child is running.
    """

    def __init__(
        self,
        phase: str,
        timeout_s: float | None = None,
        *,
        cancel_event: threading.Event | None = None,
        parent: OperationContext | None = None,
    ) -> None:
        self.phase = phase
        self.timeout_s = timeout_s
        self.parent = parent
        self._cancel_event = cancel_event or threading.Event()
        deadline = time.monotonic() + timeout_s if timeout_s is not None else None
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline = deadline

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def bound(self, timeout_s: float) -> float:
        """Clamp a per-call timeout to what is left of the budget."""
        remaining = self.remaining()
        if remaining is None:
            return timeout_s
        return max(0.0, min(timeout_s, remaining))

    def cancel(self) -> None:
        self._cancel_event.set()

    def check(self) -> None:
        if self.cancelled:
            raise OperationCancelledError(
                f"Operation cancelled during {self.phase}",
                user_message="The operation was cancelled.",
            )
        if self.expired:
            raise self.timeout_error()

    def timeout_error(self) -> PhaseTimeoutError:
        # Report the outermost context whose own deadline has passed.
        ctx: OperationContext = self
        while ctx.parent is not None and ctx.parent.expired:
            ctx = ctx.parent
        return PhaseTimeoutError(ctx.phase, ctx.timeout_s)

    def sleep(self, seconds: float) -> None:
        """Sleep that wakes up on cancellation and never outlives the budget."""
        if seconds > 0:
            self._cancel_event.wait(self.bound(seconds))
        self.check()

    def child(self, timeout_s: float | None, phase: str | None = None) -> OperationContext:
        return OperationContext(
            phase or self.phase,
            timeout_s,
            cancel_event=self._cancel_event,
            parent=self,
        )


def run_with_retry(
    fn: Callable[[], T],
    *,
    ctx: OperationContext,
    attempts: int,
    delay_s: float,
    description: str,
) -> T:
    """Run fn up to `attempts` times with a linear backoff between tries.

    Cancellation and phase timeouts are never retried.
    """
    last_exc: AppError | None = None
    for attempt in range(1, attempts + 1):
        ctx.check()
        try:
            return fn()
        except (PhaseTimeoutError, OperationCancelledError):
            raise
        except AppError as exc:
            last_exc = exc
            logger.warning(
                "%s failed (attempt %s/%s): %s", description, attempt, attempts, exc
            )
            if attempt < attempts:
                ctx.sleep(delay_s * attempt)
    assert last_exc is not None
    raise last_exc
