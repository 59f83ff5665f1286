"""Elevation checks."""

from __future__ import annotations

import ctypes
import logging
import os

from proxytun_client.core.commands import CommandRunner, looks_like_privilege_error
from proxytun_client.core.errors import CommandError, PrivilegeError

logger = logging.getLogger(__name__)


def is_elevated(runner: CommandRunner | None = None) -> bool:
    if os.name != "nt":
        return os.geteuid() == 0
    try:
        return bool(ctypes.windll.shell32.IsUserAnAdmin())  # type: ignore[attr-defined]
    except (AttributeError, OSError) as exc:
        logger.info("IsUserAnAdmin unavailable, probing with net session: %s", exc)

    # `net session` only succeeds for administrators.
    try:
        result = (runner or CommandRunner()).run(["net", "session"], timeout_s=5.0, check=False)
    except PrivilegeError:
        return False
    except CommandError as exc:
        logger.warning("Elevation check failed: %s", exc)
        return False
    return result.ok and not looks_like_privilege_error(result.output)


def require_elevation(runner: CommandRunner | None = None) -> None:
    if not is_elevated(runner):
        raise PrivilegeError(
            "Process is not elevated",
            user_message="Administrator rights are required to create the tunnel.",
        )
