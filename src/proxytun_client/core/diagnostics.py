"""Diagnostics collection."""

from __future__ import annotations

import platform
import shutil
import sys

from proxytun_client.core.errors import AppError
from proxytun_client.core.forwarder import BINARY_NAMES
from proxytun_client.core.models import TunnelSession
from proxytun_client.core.privileges import is_elevated
from proxytun_client.core.settings import TunnelSettings
from proxytun_client.core.storage import get_bin_dir, get_config_dir, get_logs_dir
from proxytun_client.core.windows_net import WindowsNetworkBackend


def _tool_available(name: str) -> bool:
    return shutil.which(name) is not None


def _forwarder_location(settings: TunnelSettings) -> str:
    if settings.forwarder_path:
        return settings.forwarder_path
    for name in BINARY_NAMES:
        found = shutil.which(name)
        if found:
            return found
        candidate = get_bin_dir() / name
        if candidate.is_file():
            return str(candidate)
    return "not found"


def collect_diagnostics(
    session: TunnelSession | None = None,
    *,
    settings: TunnelSettings | None = None,
    backend: WindowsNetworkBackend | None = None,
) -> str:
    settings = settings or TunnelSettings()
    lines: list[str] = []
    lines.append("proxytun-client diagnostics")
    lines.append("")

    lines.append("System")
    lines.append(f"- OS: {platform.system()} {platform.release()}")
    lines.append(f"- Version: {platform.version()}")
    lines.append(f"- Arch: {platform.machine()}")
    lines.append(f"- Python: {sys.version.split()[0]}")
    lines.append(f"- Elevated: {'yes' if is_elevated() else 'no'}")
    lines.append("")

    lines.append("Tools")
    for tool in ("netsh", "powershell", "route", "nslookup", "pnputil"):
        lines.append(f"- {tool}: {'yes' if _tool_available(tool) else 'no'}")
    lines.append(f"- tun2socks: {_forwarder_location(settings)}")
    lines.append("")

    lines.append("Paths")
    lines.append(f"- Config: {get_config_dir()}")
    lines.append(f"- Logs: {get_logs_dir()}")
    lines.append(f"- Binaries: {get_bin_dir()}")
    lines.append("")

    lines.append(f"Firewall rules (group {settings.firewall_group})")
    if backend is None:
        lines.append("- not queried")
    else:
        try:
            rules = backend.list_firewall_rules(settings.firewall_group)
        except AppError as exc:
            lines.append(f"- Error reading firewall rules: {exc}")
        else:
            for rule in rules:
                lines.append(f"- {rule}")
            if not rules:
                lines.append("- none")
    lines.append("")

    lines.append("Session")
    if session is None:
        lines.append("- not connected")
    else:
        lines.append(f"- Id: {session.id}")
        lines.append(f"- State: {session.state.value}")
        lines.append(f"- Proxy: {session.endpoint.display()}")
        if session.iface is not None:
            lines.append(
                f"- Adapter: {session.iface.resolved_name} ({session.iface.creation_method.value})"
            )
        lines.append(f"- TCP only: {'yes' if session.tcp_only else 'no'}")
        lines.append(f"- Simplified routing: {'yes' if session.simplified else 'no'}")
        lines.append(f"- Routes added: {len(session.added_routes)}")
        lines.append(f"- Firewall rules added: {len(session.added_firewall_rules)}")
        lines.append(f"- External IP: {session.external_ip or 'unknown'}")
        for warning in session.warnings:
            lines.append(f"- Warning: {warning}")
    lines.append("")

    return "\n".join(lines)
