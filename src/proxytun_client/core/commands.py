"""Blocking OS command execution with deadlines, cancellation and privilege detection."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import re
import shlex
import subprocess
import time
from typing import Final, Sequence

from proxytun_client.core.errors import CommandError, OperationCancelledError, PrivilegeError
from proxytun_client.core.logging_setup import redact
from proxytun_client.core.operation import OperationContext

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S: Final[float] = 15.0
_POLL_INTERVAL_S: Final[float] = 0.2

_PRIVILEGE_PATTERNS: Final[re.Pattern[str]] = re.compile(
    r"access is denied"
    r"|requires elevation"
    r"|run as administrator"
    r"|administrator privileges"
    r"|system error 5\b"
    r"|operation not permitted"
    r"|permissiondenied"
    r"|permission denied",
    re.IGNORECASE,
)


@dataclass(frozen=True, slots=True)
class CommandResult:
    cmd: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


def format_cmd(cmd: Sequence[str]) -> str:
    return redact(" ".join(shlex.quote(part) for part in cmd))


def looks_like_privilege_error(text: str) -> bool:
    return bool(text) and _PRIVILEGE_PATTERNS.search(text) is not None


def _creation_flags() -> int:
    if os.name == "nt":
        return getattr(subprocess, "CREATE_NO_WINDOW", 0)
    return 0


class CommandRunner:
    """Runs one command at a time; the child is killed, not abandoned, on timeout."""

    def run(
        self,
        cmd: Sequence[str],
        *,
        ctx: OperationContext | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        check: bool = True,
    ) -> CommandResult:
        command_text = format_cmd(cmd)
        if ctx is not None:
            ctx.check()
        logger.info("Running command: %s", command_text)
        try:
            proc = subprocess.Popen(
                list(cmd),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                creationflags=_creation_flags(),
            )
        except OSError as exc:
            logger.exception("Command execution failed: %s", command_text)
            if looks_like_privilege_error(str(exc)):
                raise PrivilegeError(
                    f"Command not permitted: {command_text}: {exc}",
                    user_message="Administrator rights are required to change network settings.",
                ) from exc
            raise CommandError(
                f"Command failed to start: {command_text}: {exc}",
                user_message="A required system tool is missing or could not be started.",
                hint="reinstall",
            ) from exc

        stdout, stderr = self._wait(proc, command_text, ctx=ctx, timeout_s=timeout_s)
        result = CommandResult(tuple(cmd), proc.returncode, stdout.strip(), stderr.strip())
        logger.info(
            "Command result rc=%s cmd=%s stdout=%r stderr=%r",
            result.returncode,
            command_text,
            redact(result.stdout),
            redact(result.stderr),
        )

        if result.returncode != 0 and looks_like_privilege_error(result.output):
            raise PrivilegeError(
                f"Insufficient privileges: {command_text}: {result.output}",
                user_message="Administrator rights are required to change network settings.",
            )
        if check and result.returncode != 0:
            detail = result.stderr or result.stdout or "unknown error"
            logger.error("Command failed rc=%s cmd=%s", result.returncode, command_text)
            raise CommandError(
                f"Command failed: {command_text}: {detail}",
                user_message=f"A network configuration command failed: {redact(detail)}",
                returncode=result.returncode,
                output=result.output,
            )
        return result

    def _wait(
        self,
        proc: subprocess.Popen[str],
        command_text: str,
        *,
        ctx: OperationContext | None,
        timeout_s: float,
    ) -> tuple[str, str]:
        started = time.monotonic()
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=_POLL_INTERVAL_S)
                return stdout or "", stderr or ""
            except subprocess.TimeoutExpired:
                pass

            if ctx is not None and (ctx.cancelled or ctx.expired):
                _kill(proc, command_text)
                logger.warning("Command aborted by %s: %s", ctx.phase, command_text)
                ctx.check()
                raise OperationCancelledError(f"Command aborted: {command_text}")
            if time.monotonic() - started >= timeout_s:
                _kill(proc, command_text)
                logger.error("Command timed out after %ss: %s", timeout_s, command_text)
                raise CommandError(
                    f"Command timed out: {command_text}",
                    user_message="A network configuration command took too long.",
                    output="",
                )


def _kill(proc: subprocess.Popen[str], command_text: str) -> None:
    try:
        proc.kill()
    except OSError:
        logger.debug("Process already gone: %s", command_text)
    try:
        proc.communicate(timeout=2.0)
    except (subprocess.TimeoutExpired, ValueError, OSError):
        logger.warning("Killed process did not exit cleanly: %s", command_text)
