"""Typed application errors with user-facing messages and remediation hints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from proxytun_client.core.models import ValidationReport

Hint = Literal["retry", "elevate", "check-connectivity", "reinstall"]


class AppError(Exception):
    """Base application error."""

    default_hint: Hint = "retry"

    def __init__(
        self,
        message: str,
        user_message: str | None = None,
        *,
        hint: Hint | None = None,
    ) -> None:
        super().__init__(message)
        self.user_message = user_message or message
        self.hint: Hint = hint or self.default_hint
        # Filled in by the supervisor when a connect attempt fails.
        self.phase: str | None = None
        self.validation: ValidationReport | None = None

    def describe(self) -> str:
        """Message suitable for showing to a user: phase, reason and hint."""
        prefix = f"[{self.phase}] " if self.phase else ""
        return f"{prefix}{self.user_message} ({_HINT_TEXT[self.hint]})"


_HINT_TEXT: dict[str, str] = {
    "retry": "try again",
    "elevate": "run as administrator",
    "check-connectivity": "check the proxy address and your network connection",
    "reinstall": "reinstall the application",
}


class ConfigurationError(AppError):
    default_hint: Hint = "check-connectivity"


class ValidationError(AppError):
    default_hint: Hint = "check-connectivity"

    def __init__(
        self,
        message: str,
        user_message: str | None = None,
        *,
        report: ValidationReport | None = None,
        hint: Hint | None = None,
    ) -> None:
        super().__init__(message, user_message, hint=hint)
        self.validation = report


class PrivilegeError(AppError):
    default_hint: Hint = "elevate"


class ProvisioningError(AppError):
    pass


class RoutingError(AppError):
    pass


class DNSError(AppError):
    pass


class CommandError(AppError):
    """A single OS command failed or timed out on its own budget."""

    def __init__(
        self,
        message: str,
        user_message: str | None = None,
        *,
        returncode: int | None = None,
        output: str = "",
        hint: Hint | None = None,
    ) -> None:
        super().__init__(message, user_message, hint=hint)
        self.returncode = returncode
        self.output = output


class PhaseTimeoutError(AppError, TimeoutError):
    """A phase exceeded its time budget."""

    def __init__(self, phase: str, timeout_s: float | None) -> None:
        budget = f" after {timeout_s:g}s" if timeout_s is not None else ""
        super().__init__(
            f"Phase {phase!r} timed out{budget}",
            user_message=f"Timed out while {phase.replace('_', ' ')}.",
        )
        self.phase = phase
        self.timeout_s = timeout_s


class OperationCancelledError(AppError):
    pass


class ForwarderError(AppError):
    """The forwarding binary is missing or failed to start."""


class ForwarderCrashError(AppError):
    """The forwarding process exited while the tunnel was connected."""

    def __init__(self, exit_code: int | None, detail: str = "") -> None:
        super().__init__(
            f"Forwarder exited unexpectedly (code={exit_code}): {detail}".rstrip(": "),
            user_message="The tunnel process stopped unexpectedly; the connection was closed.",
        )
        self.exit_code = exit_code
        self.detail = detail
