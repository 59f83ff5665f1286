"""Windows networking primitives: routes, adapters, DNS client settings, firewall.

Every mutation goes through `CommandRunner` so it inherits the caller's phase
deadline and cancellation. Parsers are module-level functions so they can be
tested against captured command output.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import os
from pathlib import Path
import re
import shutil
from typing import Any, Final, Iterable, Sequence

from proxytun_client.core.commands import CommandRunner
from proxytun_client.core.errors import CommandError
from proxytun_client.core.models import (
    AdapterInfo,
    AddressFamily,
    CreationMethod,
    DefaultRoute,
    DnsSnapshot,
    FirewallRule,
    ResolveResult,
    RouteEntry,
)
from proxytun_client.core.operation import OperationContext
from proxytun_client.core.storage import get_bin_dir

logger = logging.getLogger(__name__)

LOOPBACK_INF: Final[str] = r"C:\Windows\inf\netloop.inf"
TUNNEL_DRIVER_DLL: Final[str] = "wintun.dll"

_SHORT_S: Final[float] = 10.0
_LONG_S: Final[float] = 30.0

_IPV4_RE: Final[re.Pattern[str]] = re.compile(r"\b(\d{1,3}(?:\.\d{1,3}){3})\b")
_ROUTE_LINE_RE: Final[re.Pattern[str]] = re.compile(
    r"^\s*(\d{1,3}(?:\.\d{1,3}){3})\s+(\d{1,3}(?:\.\d{1,3}){3})\s+(\S+)\s+(\S+)\s+(\d+)\s*$"
)
_FAMILY_CODES: Final[dict[str, AddressFamily]] = {
    "2": AddressFamily.IPV4,
    "ipv4": AddressFamily.IPV4,
    "23": AddressFamily.IPV6,
    "ipv6": AddressFamily.IPV6,
}


def powershell(script: str) -> list[str]:
    return [
        "powershell",
        "-NoProfile",
        "-NonInteractive",
        "-ExecutionPolicy",
        "Bypass",
        "-Command",
        script,
    ]


def ps_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def is_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


def is_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


# Parsers


def parse_json_rows(raw: str) -> list[dict[str, Any]]:
    """ConvertTo-Json emits an object for one row and a list for several."""
    text = (raw or "").strip()
    if not text:
        return []
    data = json.loads(text)
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return [row for row in data if isinstance(row, dict)]
    return []


def parse_json_strings(raw: str) -> list[str]:
    text = (raw or "").strip()
    if not text:
        return []
    data = json.loads(text)
    if isinstance(data, str):
        return [data]
    if isinstance(data, list):
        return [str(item) for item in data if item]
    return []


def parse_adapters_json(raw: str) -> list[AdapterInfo]:
    adapters: list[AdapterInfo] = []
    for row in parse_json_rows(raw):
        name = str(row.get("Name") or "").strip()
        if not name:
            continue
        index = row.get("InterfaceIndex") or row.get("ifIndex")
        adapters.append(
            AdapterInfo(
                name=name,
                description=str(row.get("InterfaceDescription") or ""),
                index=int(index) if isinstance(index, (int, str)) and str(index).isdigit() else None,
                status=str(row.get("Status") or ""),
                virtual=bool(row.get("Virtual")),
            )
        )
    return adapters


def parse_netsh_interfaces(raw: str) -> list[AdapterInfo]:
    """Parse `netsh interface show interface` (Admin State, State, Type, Interface Name)."""
    adapters: list[AdapterInfo] = []
    for line in (raw or "").splitlines():
        parts = line.split()
        if len(parts) < 4:
            continue
        if parts[0].lower() not in {"enabled", "disabled"}:
            continue
        name = " ".join(parts[3:]).strip()
        adapters.append(AdapterInfo(name=name, status=parts[1]))
    return adapters


def parse_route_table(raw: str) -> list[tuple[str, str, str, str, int]]:
    """Rows of the IPv4 active-routes block of `route print`."""
    rows: list[tuple[str, str, str, str, int]] = []
    for line in (raw or "").splitlines():
        match = _ROUTE_LINE_RE.match(line)
        if match is None:
            continue
        dest, mask, gateway, iface, metric = match.groups()
        rows.append((dest, mask, gateway, iface, int(metric)))
    return rows


def parse_route_print_default(raw: str) -> DefaultRoute | None:
    candidates = [
        row
        for row in parse_route_table(raw)
        if row[0] == "0.0.0.0" and row[1] == "0.0.0.0" and is_ipv4(row[2]) and row[2] != "0.0.0.0"
    ]
    if not candidates:
        return None
    _dest, _mask, gateway, _iface, _metric = min(candidates, key=lambda row: row[4])
    return DefaultRoute(gateway=gateway)


def parse_ipconfig_gateway(raw: str) -> str | None:
    lines = (raw or "").splitlines()
    for position, line in enumerate(lines):
        if "default gateway" not in line.lower():
            continue
        _, _, value = line.partition(":")
        for candidate in [value] + lines[position + 1 : position + 3]:
            match = _IPV4_RE.search(candidate)
            if match and match.group(1) != "0.0.0.0":
                return match.group(1)
    return None


def parse_nslookup(domain: str, raw: str) -> ResolveResult:
    server_name: str | None = None
    server_address: str | None = None
    addresses: list[str] = []
    in_answer = False
    for raw_line in (raw or "").splitlines():
        line = raw_line.strip()
        if not line:
            continue
        key, _, value = line.partition(":")
        key = key.strip().lower()
        value = value.strip()
        if key == "server" and server_name is None:
            server_name = value or None
            continue
        if key == "name":
            in_answer = True
            continue
        if key in {"address", "addresses"}:
            if in_answer:
                if value:
                    addresses.append(value)
            elif server_address is None:
                server_address = value.split("#", 1)[0] or None
            continue
        if in_answer and is_ip(line):
            addresses.append(line)
    return ResolveResult(
        domain=domain,
        server_name=server_name,
        server_address=server_address,
        addresses=tuple(addr for addr in addresses if is_ip(addr)),
    )


def parse_dns_snapshot(raw: str) -> list[DnsSnapshot]:
    snapshots: list[DnsSnapshot] = []
    for row in parse_json_rows(raw):
        alias = str(row.get("InterfaceAlias") or "").strip()
        family = _FAMILY_CODES.get(str(row.get("AddressFamily") or "").strip().lower())
        if not alias or family is None:
            continue
        servers = row.get("ServerAddresses") or []
        if isinstance(servers, str):
            servers = [servers]
        snapshots.append(
            DnsSnapshot(
                interface=alias,
                family=family,
                servers=tuple(str(server) for server in servers if server),
            )
        )
    return snapshots


def _route_output_failed(text: str) -> bool:
    lowered = text.lower()
    return "failed" in lowered or "bad argument" in lowered or "bad destination" in lowered


class WindowsNetworkBackend:
    """Thin command layer over route.exe, netsh, PowerShell and nslookup."""

    def __init__(self, runner: CommandRunner | None = None) -> None:
        self.runner = runner or CommandRunner()

    # Routes

    def default_route(self, ctx: OperationContext | None = None) -> DefaultRoute | None:
        """Current IPv4 default route, trying PowerShell, route print and ipconfig in turn."""
        script = (
            "Get-NetRoute -DestinationPrefix '0.0.0.0/0' -ErrorAction Stop"
            " | Sort-Object RouteMetric"
            " | Select-Object -First 1 NextHop,InterfaceIndex,InterfaceAlias"
            " | ConvertTo-Json -Compress"
        )
        try:
            rows = parse_json_rows(self.runner.run(powershell(script), ctx=ctx, timeout_s=_SHORT_S).stdout)
            for row in rows:
                gateway = str(row.get("NextHop") or "")
                if is_ipv4(gateway) and gateway != "0.0.0.0":
                    index = row.get("InterfaceIndex")
                    return DefaultRoute(
                        gateway=gateway,
                        if_index=int(index) if isinstance(index, int) else None,
                        interface_alias=str(row.get("InterfaceAlias") or "") or None,
                    )
        except (CommandError, ValueError) as exc:
            logger.info("Get-NetRoute default route lookup failed: %s", exc)

        try:
            result = self.runner.run(["route", "print", "0.0.0.0"], ctx=ctx, timeout_s=_SHORT_S)
            route = parse_route_print_default(result.stdout)
            if route is not None:
                return route
        except CommandError as exc:
            logger.info("route print default route lookup failed: %s", exc)

        try:
            result = self.runner.run(["ipconfig"], ctx=ctx, timeout_s=_SHORT_S)
            gateway = parse_ipconfig_gateway(result.stdout)
            if gateway is not None:
                return DefaultRoute(gateway=gateway)
        except CommandError as exc:
            logger.info("ipconfig default gateway lookup failed: %s", exc)

        logger.warning("Could not determine the default gateway")
        return None

    def add_route(self, route: RouteEntry, ctx: OperationContext | None = None) -> None:
        cmd = [
            "route",
            "add",
            route.destination,
            "mask",
            route.mask,
            route.gateway,
            "metric",
            str(route.metric),
        ]
        if route.if_index is not None:
            cmd += ["if", str(route.if_index)]
        result = self.runner.run(cmd, ctx=ctx, timeout_s=_SHORT_S, check=False)
        if "already exists" in result.output.lower():
            logger.info("Route already present: %s", route.describe())
            return
        if not result.ok or _route_output_failed(result.output):
            raise CommandError(
                f"route add failed for {route.describe()}: {result.output}",
                user_message="Failed to add a network route.",
                returncode=result.returncode,
                output=result.output,
            )

    def delete_route(self, route: RouteEntry, ctx: OperationContext | None = None) -> None:
        cmd = ["route", "delete", route.destination, "mask", route.mask, route.gateway]
        result = self.runner.run(cmd, ctx=ctx, timeout_s=_SHORT_S, check=False)
        if "element not found" in result.output.lower():
            logger.info("Route already absent: %s", route.describe())
            return
        if not result.ok or _route_output_failed(result.output):
            raise CommandError(
                f"route delete failed for {route.describe()}: {result.output}",
                user_message="Failed to remove a network route.",
                returncode=result.returncode,
                output=result.output,
            )

    def route_table(self, ctx: OperationContext | None = None) -> str:
        return self.runner.run(["route", "print", "-4"], ctx=ctx, timeout_s=_SHORT_S).stdout

    def has_route(self, route: RouteEntry, ctx: OperationContext | None = None) -> bool:
        for dest, mask, gateway, _iface, _metric in parse_route_table(self.route_table(ctx)):
            if dest == route.destination and mask == route.mask and gateway == route.gateway:
                return True
        return False

    # Adapters

    def list_adapters(self, ctx: OperationContext | None = None) -> list[AdapterInfo]:
        script = (
            "Get-NetAdapter -ErrorAction Stop"
            " | Select-Object Name,InterfaceDescription,Status,InterfaceIndex,Virtual"
            " | ConvertTo-Json -Compress"
        )
        try:
            result = self.runner.run(powershell(script), ctx=ctx, timeout_s=_SHORT_S)
            return parse_adapters_json(result.stdout)
        except (CommandError, ValueError) as exc:
            logger.info("Get-NetAdapter failed, falling back to netsh: %s", exc)
        result = self.runner.run(
            ["netsh", "interface", "show", "interface"], ctx=ctx, timeout_s=_SHORT_S
        )
        return parse_netsh_interfaces(result.stdout)

    def active_interfaces(self, ctx: OperationContext | None = None) -> list[AdapterInfo]:
        return [
            adapter
            for adapter in self.list_adapters(ctx)
            if adapter.status.lower() in {"up", "connected"}
        ]

    def adapter_queryable(self, name: str, ctx: OperationContext | None = None) -> bool:
        result = self.runner.run(
            ["netsh", "interface", "ip", "show", "config", f"name={name}"],
            ctx=ctx,
            timeout_s=_SHORT_S,
            check=False,
        )
        lowered = result.output.lower()
        return result.ok and "not found" not in lowered and "syntax is incorrect" not in lowered

    def create_native_adapter(self, name: str, ctx: OperationContext | None = None) -> None:
        """Create a host-internal virtual switch; Windows exposes it as `vEthernet (<name>)`."""
        script = (
            f"if (Get-VMSwitch -Name {ps_quote(name)} -ErrorAction SilentlyContinue) {{ exit 0 }}; "
            f"New-VMSwitch -Name {ps_quote(name)} -SwitchType Internal -ErrorAction Stop | Out-Null"
        )
        self.runner.run(powershell(script), ctx=ctx, timeout_s=_LONG_S)

    def create_scripted_adapter(self, name: str, ctx: OperationContext | None = None) -> None:
        """Install the loopback driver with Add-WindowsDriver and rename the new adapter."""
        script = (
            f"if (Get-NetAdapter -Name {ps_quote(name)} -ErrorAction SilentlyContinue) {{ exit 0 }}; "
            f"$inf = {ps_quote(LOOPBACK_INF)}; "
            "if (-not (Test-Path $inf)) { throw 'netloop.inf not found' }; "
            "Add-WindowsDriver -Online -Driver $inf -ErrorAction Stop | Out-Null; "
            "Start-Sleep -Seconds 2; "
            "$new = Get-NetAdapter | Where-Object { $_.InterfaceDescription -like '*Loopback*' }"
            " | Sort-Object ifIndex -Descending | Select-Object -First 1; "
            "if (-not $new) { throw 'no loopback adapter appeared' }; "
            f"if ($new.Name -ne {ps_quote(name)}) {{ "
            f"Rename-NetAdapter -Name $new.Name -NewName {ps_quote(name)} -ErrorAction Stop }}"
        )
        self.runner.run(powershell(script), ctx=ctx, timeout_s=_LONG_S)

    def install_loopback_adapter(self, ctx: OperationContext | None = None) -> None:
        """Install the Microsoft loopback adapter; the OS picks its display name."""
        result = self.runner.run(
            ["pnputil", "/add-driver", LOOPBACK_INF, "/install"],
            ctx=ctx,
            timeout_s=_LONG_S,
            check=False,
        )
        if result.ok:
            return
        logger.info("pnputil loopback install failed, trying devcon: %s", result.output)
        if shutil.which("devcon") is None:
            raise CommandError(
                f"Loopback driver install failed: {result.output}",
                user_message="Could not install the loopback network adapter.",
                returncode=result.returncode,
                output=result.output,
            )
        self.runner.run(
            ["devcon", "install", LOOPBACK_INF, "*MSLOOP"], ctx=ctx, timeout_s=_LONG_S
        )

    def rename_adapter(self, name: str, new_name: str, ctx: OperationContext | None = None) -> None:
        self.runner.run(
            ["netsh", "interface", "set", "interface", f"name={name}", f"newname={new_name}"],
            ctx=ctx,
            timeout_s=_SHORT_S,
        )

    def tunnel_driver_available(self, forwarder_path: str | None = None) -> bool:
        candidates = [get_bin_dir() / TUNNEL_DRIVER_DLL]
        if forwarder_path:
            candidates.append(Path(forwarder_path).parent / TUNNEL_DRIVER_DLL)
        system_root = os.environ.get("SystemRoot")
        if system_root:
            candidates.append(Path(system_root) / "System32" / TUNNEL_DRIVER_DLL)
        return any(path.exists() for path in candidates)

    def set_adapter_address(
        self, name: str, address: str, mask: str, ctx: OperationContext | None = None
    ) -> None:
        try:
            self.runner.run(
                [
                    "netsh",
                    "interface",
                    "ip",
                    "set",
                    "address",
                    f"name={name}",
                    "source=static",
                    f"addr={address}",
                    f"mask={mask}",
                ],
                ctx=ctx,
                timeout_s=_SHORT_S,
            )
        except CommandError as exc:
            logger.info("netsh set address failed, trying add address: %s", exc)
            self.runner.run(
                ["netsh", "interface", "ipv4", "add", "address", name, address, mask],
                ctx=ctx,
                timeout_s=_SHORT_S,
            )

    def reset_adapter_address(self, name: str, ctx: OperationContext | None = None) -> None:
        self.runner.run(
            ["netsh", "interface", "ip", "set", "address", f"name={name}", "source=dhcp"],
            ctx=ctx,
            timeout_s=_SHORT_S,
        )

    def enable_adapter(self, name: str, ctx: OperationContext | None = None) -> None:
        self.runner.run(
            ["netsh", "interface", "set", "interface", f"name={name}", "admin=enable"],
            ctx=ctx,
            timeout_s=_SHORT_S,
        )

    def disable_adapter(self, name: str, ctx: OperationContext | None = None) -> None:
        self.runner.run(
            ["netsh", "interface", "set", "interface", f"name={name}", "admin=disable"],
            ctx=ctx,
            timeout_s=_SHORT_S,
        )

    def remove_adapter(
        self, name: str, method: CreationMethod, ctx: OperationContext | None = None
    ) -> None:
        if method is CreationMethod.NATIVE_ADAPTER:
            switch = name
            if switch.startswith("vEthernet (") and switch.endswith(")"):
                switch = switch[len("vEthernet (") : -1]
            script = f"Remove-VMSwitch -Name {ps_quote(switch)} -Force -ErrorAction Stop"
        else:
            script = (
                f"$a = Get-NetAdapter -Name {ps_quote(name)} -ErrorAction Stop; "
                "pnputil /remove-device $a.PnPDeviceID | Out-Null; "
                "if ($LASTEXITCODE -ne 0) { throw 'pnputil /remove-device failed' }"
            )
        self.runner.run(powershell(script), ctx=ctx, timeout_s=_LONG_S)

    # DNS client settings

    def get_dns_servers(
        self,
        name: str,
        family: AddressFamily = AddressFamily.IPV4,
        ctx: OperationContext | None = None,
    ) -> tuple[str, ...]:
        script = (
            f"Get-DnsClientServerAddress -InterfaceAlias {ps_quote(name)}"
            f" -AddressFamily {family.value} -ErrorAction Stop"
            " | Select-Object -ExpandProperty ServerAddresses | ConvertTo-Json -Compress"
        )
        result = self.runner.run(powershell(script), ctx=ctx, timeout_s=_SHORT_S)
        try:
            return tuple(parse_json_strings(result.stdout))
        except ValueError as exc:
            raise CommandError(f"Unreadable DNS server list for {name}: {result.stdout!r}") from exc

    def dns_snapshot(self, ctx: OperationContext | None = None) -> list[DnsSnapshot]:
        script = (
            "Get-DnsClientServerAddress -ErrorAction Stop"
            " | Select-Object InterfaceAlias,AddressFamily,ServerAddresses"
            " | ConvertTo-Json -Compress -Depth 3"
        )
        result = self.runner.run(powershell(script), ctx=ctx, timeout_s=_SHORT_S)
        try:
            return parse_dns_snapshot(result.stdout)
        except ValueError as exc:
            raise CommandError(f"Unreadable DNS snapshot: {result.stdout!r}") from exc

    def set_dns_servers(
        self,
        name: str,
        servers: Sequence[str],
        family: AddressFamily = AddressFamily.IPV4,
        ctx: OperationContext | None = None,
    ) -> None:
        addresses = ",".join(ps_quote(server) for server in servers)
        script = (
            f"Set-DnsClientServerAddress -InterfaceAlias {ps_quote(name)}"
            f" -ServerAddresses ({addresses}) -ErrorAction Stop"
        )
        try:
            self.runner.run(powershell(script), ctx=ctx, timeout_s=_SHORT_S)
            return
        except CommandError as exc:
            if family is not AddressFamily.IPV4 or not servers:
                raise
            logger.info("Set-DnsClientServerAddress failed, falling back to netsh: %s", exc)
        self.runner.run(
            [
                "netsh",
                "interface",
                "ipv4",
                "set",
                "dnsservers",
                f"name={name}",
                "source=static",
                f"address={servers[0]}",
                "register=primary",
                "validate=no",
            ],
            ctx=ctx,
            timeout_s=_SHORT_S,
        )
        for position, server in enumerate(servers[1:], start=2):
            self.runner.run(
                [
                    "netsh",
                    "interface",
                    "ipv4",
                    "add",
                    "dnsservers",
                    f"name={name}",
                    f"address={server}",
                    f"index={position}",
                    "validate=no",
                ],
                ctx=ctx,
                timeout_s=_SHORT_S,
            )

    def reset_dns(
        self,
        name: str,
        ctx: OperationContext | None = None,
        *,
        family: AddressFamily | None = None,
    ) -> None:
        """Back to automatic DNS; both families unless one is given."""
        if family is not None:
            self.runner.run(
                [
                    "netsh",
                    "interface",
                    family.value.lower(),
                    "set",
                    "dnsservers",
                    f"name={name}",
                    "source=dhcp",
                ],
                ctx=ctx,
                timeout_s=_SHORT_S,
            )
            return
        script = (
            f"Set-DnsClientServerAddress -InterfaceAlias {ps_quote(name)}"
            " -ResetServerAddresses -ErrorAction Stop"
        )
        self.runner.run(powershell(script), ctx=ctx, timeout_s=_SHORT_S)

    # Firewall

    def add_firewall_block(
        self, rule: FirewallRule, group: str, ctx: OperationContext | None = None
    ) -> None:
        parts = [
            f"Remove-NetFirewallRule -Name {ps_quote(rule.name)} -ErrorAction SilentlyContinue;",
            f"New-NetFirewallRule -Name {ps_quote(rule.name)}",
            f"-DisplayName {ps_quote(rule.name)}",
            f"-Group {ps_quote(group)}",
            "-Direction Outbound -Action Block",
            f"-Protocol {rule.protocol}",
            f"-RemotePort {rule.remote_port}",
        ]
        if rule.interface_aliases:
            parts.append("-InterfaceAlias " + ",".join(ps_quote(a) for a in rule.interface_aliases))
        if rule.remote_addresses:
            parts.append("-RemoteAddress " + ",".join(ps_quote(a) for a in rule.remote_addresses))
        parts.append("-ErrorAction Stop | Out-Null")
        self.runner.run(powershell(" ".join(parts)), ctx=ctx, timeout_s=_SHORT_S)

    def delete_firewall_rule(self, name: str, ctx: OperationContext | None = None) -> None:
        script = f"Remove-NetFirewallRule -Name {ps_quote(name)} -ErrorAction Stop"
        result = self.runner.run(powershell(script), ctx=ctx, timeout_s=_SHORT_S, check=False)
        if result.ok:
            return
        if "no msft_netfirewallrule objects found" in result.output.lower():
            logger.info("Firewall rule already absent: %s", name)
            return
        raise CommandError(
            f"Failed to remove firewall rule {name}: {result.output}",
            user_message="Failed to remove a firewall rule.",
            returncode=result.returncode,
            output=result.output,
        )

    def list_firewall_rules(self, group: str, ctx: OperationContext | None = None) -> list[str]:
        script = (
            f"Get-NetFirewallRule -Group {ps_quote(group)} -ErrorAction SilentlyContinue"
            " | Select-Object -ExpandProperty Name | ConvertTo-Json -Compress"
        )
        result = self.runner.run(powershell(script), ctx=ctx, timeout_s=_SHORT_S)
        try:
            return parse_json_strings(result.stdout)
        except ValueError as exc:
            raise CommandError(f"Unreadable firewall rule list: {result.stdout!r}") from exc

    # Lookups

    def resolve(
        self, domain: str, server: str | None = None, ctx: OperationContext | None = None
    ) -> ResolveResult:
        cmd = ["nslookup", domain] + ([server] if server else [])
        result = self.runner.run(cmd, ctx=ctx, timeout_s=_SHORT_S, check=False)
        return parse_nslookup(domain, result.output)

    def resolve_host(self, host: str, ctx: OperationContext | None = None) -> list[str]:
        """IPv4 addresses for a host name, looked up under the caller's deadline."""
        if is_ipv4(host):
            return [host]
        try:
            result = self.resolve(host, ctx=ctx)
        except CommandError as exc:
            logger.warning("Could not resolve %s: %s", host, exc)
            return []
        return _unique(addr for addr in result.addresses if is_ipv4(addr))

    def process_alive(self, pid: int, ctx: OperationContext | None = None) -> bool:
        if os.name != "nt":
            try:
                os.kill(pid, 0)
            except ProcessLookupError:
                return False
            except PermissionError:
                return True
            return True
        result = self.runner.run(
            ["tasklist", "/FI", f"PID eq {pid}", "/NH", "/FO", "CSV"],
            ctx=ctx,
            timeout_s=_SHORT_S,
            check=False,
        )
        return f'"{pid}"' in result.stdout


def _unique(values: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen
