"""Lifecycle of the external packet-forwarding process (tun2socks)."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
import logging
import os
from pathlib import Path
import shutil
import subprocess
import threading
import time
from typing import IO, Callable, Final

from proxytun_client.core.commands import CommandRunner, format_cmd
from proxytun_client.core.errors import AppError, ForwarderError, PrivilegeError
from proxytun_client.core.logging_setup import redact
from proxytun_client.core.models import ProxyEndpoint
from proxytun_client.core.operation import OperationContext
from proxytun_client.core.storage import get_bin_dir

logger = logging.getLogger(__name__)

BINARY_NAMES: Final[tuple[str, ...]] = ("tun2socks.exe", "tun2socks")
STARTUP_GRACE_S: Final[float] = 3.0
STOP_TIMEOUT_S: Final[float] = 5.0
_TAIL_LINES: Final[int] = 50

ExitCallback = Callable[[int | None, str], None]


@dataclass(frozen=True, slots=True)
class ForwarderLaunch:
    device: str
    endpoint: ProxyEndpoint
    mtu: int
    tcp_only: bool


def find_forwarder_binary(configured: str | None = None) -> Path:
    if configured:
        path = Path(configured).expanduser()
        if path.is_file():
            return path
        raise ForwarderError(
            f"Configured forwarder not found: {path}",
            user_message="The tunnel helper (tun2socks) was not found at the configured path.",
            hint="reinstall",
        )
    for name in BINARY_NAMES:
        found = shutil.which(name)
        if found:
            return Path(found)
    for name in BINARY_NAMES:
        candidate = get_bin_dir() / name
        if candidate.is_file():
            return candidate
    raise ForwarderError(
        "tun2socks binary not found on PATH or in the data directory",
        user_message=f"The tunnel helper (tun2socks) is missing. Place it in {get_bin_dir()}.",
        hint="reinstall",
    )


def select_udp_args(help_text: str, *, tcp_only: bool) -> list[str]:
    """Pick UDP flags the installed build understands."""
    if tcp_only:
        if "-disable-udp" in help_text:
            return ["--disable-udp"]
        if "-tcp-only" in help_text:
            return ["--tcp-only"]
    if "-udp-timeout" in help_text:
        # Short-lived UDP still lets DNS through when the proxy cannot relay it.
        return ["--udp-timeout", "30s"]
    return []


def build_forwarder_args(binary: Path, launch: ForwarderLaunch, udp_args: list[str]) -> list[str]:
    return [
        str(binary),
        "--device",
        f"tun://{launch.device}",
        "--proxy",
        launch.endpoint.proxy_url(),
        "--mtu",
        str(launch.mtu),
        *udp_args,
    ]


def classify_stderr(text: str) -> AppError | None:
    lowered = text.lower()
    if "flag provided but not defined" in lowered:
        return ForwarderError(
            f"Forwarder rejected its arguments: {redact(text)}",
            user_message="The installed tun2socks version is not compatible.",
            hint="reinstall",
        )
    if "permission denied" in lowered or "access denied" in lowered or "access is denied" in lowered:
        return PrivilegeError(
            f"Forwarder lacks privileges: {redact(text)}",
            user_message="Administrator rights are required to start the tunnel.",
        )
    if "address already in use" in lowered:
        return ForwarderError(
            f"Forwarder address in use: {redact(text)}",
            user_message="Another tunnel is already using the network device.",
        )
    return None


class ForwarderProcess:
    """Owns one tun2socks child: spawn, drain pipes, watch for exit, stop."""

    def __init__(
        self,
        binary: Path,
        *,
        runner: CommandRunner | None = None,
        startup_grace_s: float = STARTUP_GRACE_S,
    ) -> None:
        self.binary = binary
        self.runner = runner or CommandRunner()
        self.startup_grace_s = startup_grace_s
        self.on_exit: ExitCallback | None = None
        self._proc: subprocess.Popen[str] | None = None
        self._stopping = threading.Event()
        self._started = threading.Event()
        self._tail: deque[str] = deque(maxlen=_TAIL_LINES)
        self._threads: list[threading.Thread] = []

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    def is_alive(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def output_tail(self) -> str:
        return "\n".join(self._tail)

    def detect_udp_args(self, ctx: OperationContext, *, tcp_only: bool) -> list[str]:
        try:
            result = self.runner.run(
                [str(self.binary), "-h"], ctx=ctx, timeout_s=5.0, check=False
            )
            help_text = result.output
        except AppError as exc:
            logger.warning("Could not read forwarder options, using defaults: %s", exc)
            help_text = "-udp-timeout"
        return select_udp_args(help_text, tcp_only=tcp_only)

    def start(self, launch: ForwarderLaunch, ctx: OperationContext) -> None:
        if self.is_alive():
            raise ForwarderError("Forwarder already running")
        udp_args = self.detect_udp_args(ctx, tcp_only=launch.tcp_only)
        args = build_forwarder_args(self.binary, launch, udp_args)
        logger.info("Starting forwarder: %s", format_cmd(args))
        ctx.check()
        self._stopping.clear()
        self._started.clear()
        self._tail.clear()
        creationflags = getattr(subprocess, "CREATE_NO_WINDOW", 0) if os.name == "nt" else 0
        try:
            self._proc = subprocess.Popen(
                args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                creationflags=creationflags,
            )
        except OSError as exc:
            logger.exception("Failed to spawn forwarder")
            raise ForwarderError(
                f"Failed to start forwarder: {exc}",
                user_message="The tunnel helper could not be started.",
                hint="reinstall",
            ) from exc

        proc = self._proc
        self._threads = [
            threading.Thread(
                target=self._drain, args=(proc.stdout, "stdout"), name="forwarder-stdout", daemon=True
            ),
            threading.Thread(
                target=self._drain, args=(proc.stderr, "stderr"), name="forwarder-stderr", daemon=True
            ),
            threading.Thread(target=self._watch, args=(proc,), name="forwarder-watch", daemon=True),
        ]
        for thread in self._threads:
            thread.start()

        # Most startup failures (bad flags, no privileges) exit within a few seconds.
        grace_end = time.monotonic() + ctx.bound(self.startup_grace_s)
        while time.monotonic() < grace_end:
            if proc.poll() is not None:
                break
            ctx.sleep(0.1)
        if proc.poll() is not None:
            time.sleep(0.1)
            detail = self.output_tail()
            classified = classify_stderr(detail)
            if classified is not None:
                raise classified
            raise ForwarderError(
                f"Forwarder exited during startup (code={proc.returncode}): {redact(detail)}",
                user_message="The tunnel helper stopped right after starting.",
            )
        self._started.set()
        logger.info("Forwarder running with pid %s", proc.pid)

    def stop(self, timeout_s: float = STOP_TIMEOUT_S) -> None:
        proc = self._proc
        if proc is None:
            return
        self._stopping.set()
        if proc.poll() is None:
            logger.info("Stopping forwarder pid %s", proc.pid)
            proc.terminate()
            try:
                proc.wait(timeout=timeout_s)
            except subprocess.TimeoutExpired:
                logger.warning("Forwarder did not exit after %ss, killing", timeout_s)
                proc.kill()
                proc.wait(timeout=timeout_s)
        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join(timeout=1.0)
        self._proc = None
        logger.info("Forwarder stopped")

    def _drain(self, stream: IO[str] | None, label: str) -> None:
        if stream is None:
            return
        for line in stream:
            text = line.rstrip()
            if not text:
                continue
            self._tail.append(text)
            logger.debug("forwarder %s: %s", label, redact(text))

    def _watch(self, proc: subprocess.Popen[str]) -> None:
        code = proc.wait()
        if self._stopping.is_set() or not self._started.is_set():
            return
        time.sleep(0.1)
        detail = self.output_tail()
        logger.error("Forwarder exited unexpectedly (code=%s): %s", code, redact(detail))
        callback = self.on_exit
        if callback is not None:
            callback(code, detail)


def default_forwarder_factory(configured_path: str | None) -> ForwarderProcess:
    return ForwarderProcess(find_forwarder_binary(configured_path))
