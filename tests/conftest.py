from __future__ import annotations

from dataclasses import replace
import itertools
from typing import Any

import pytest

from proxytun_client.core.dns_guard import DnsLeakGuard
from proxytun_client.core.errors import CommandError, ValidationError
from proxytun_client.core.interface_provisioner import InterfaceProvisioner
from proxytun_client.core.leak_test import DnsLeakTester
from proxytun_client.core.models import (
    AdapterInfo,
    AddressFamily,
    CreationMethod,
    DefaultRoute,
    DnsSnapshot,
    FirewallRule,
    ResolveResult,
    RouteEntry,
    ValidationReport,
)
from proxytun_client.core.operation import OperationContext
from proxytun_client.core.routing import RoutingController
from proxytun_client.core.settings import TunnelSettings
from proxytun_client.core.supervisor import TunnelSupervisor

WIFI = AdapterInfo("Wi-Fi", "Intel(R) Wi-Fi 6 AX201 160MHz", 12, "Up")
ETHERNET = AdapterInfo("Ethernet", "Realtek PCIe GbE Family Controller", 7, "Disconnected")
ORIGINAL_GATEWAY = "192.168.1.1"


class FakeNetworkBackend:
    """In-memory routing table, adapter list, DNS client settings and firewall.

    Every mutation is appended to `ops` so tests can assert ordering. `fail`
    maps "op" or "op:detail" to an exception raised on that call; names in
    `hang` block until the caller's deadline passes (once each).
    """

    def __init__(self) -> None:
        self.routes: set[tuple[str, str, str]] = {("0.0.0.0", "0.0.0.0", ORIGINAL_GATEWAY)}
        self.adapters: list[AdapterInfo] = [WIFI, ETHERNET]
        self.dns: dict[tuple[str, AddressFamily], tuple[str, ...]] = {
            ("Wi-Fi", AddressFamily.IPV4): (ORIGINAL_GATEWAY,),
            ("Ethernet", AddressFamily.IPV4): (),
        }
        self.firewall: dict[str, tuple[str, FirewallRule]] = {}
        self.addresses: dict[str, tuple[str, str]] = {}
        self.hosts: dict[str, list[str]] = {"dns.google": ["8.8.8.8", "8.8.4.4"]}
        self.system_resolver = "8.8.8.8"
        self.alive = True
        self.driver_available = False
        self.loopback_name = "Ethernet 7"
        self.unqueryable: set[str] = set()
        self.fail: dict[str, Exception] = {}
        self.hang: set[str] = set()
        self.ops: list[tuple[str, str]] = []
        self._next_index = itertools.count(20)

    # Test helpers

    def state(self) -> dict[str, Any]:
        return {
            "routes": set(self.routes),
            "dns": dict(self.dns),
            "firewall": set(self.firewall),
            "adapters": [adapter.name for adapter in self.adapters],
            "addresses": dict(self.addresses),
        }

    def op_names(self) -> list[str]:
        return [name for name, _detail in self.ops]

    def _call(self, op: str, detail: str = "", ctx: OperationContext | None = None) -> None:
        if ctx is not None:
            ctx.check()
        if op in self.hang and ctx is not None:
            self.hang.discard(op)
            while True:
                ctx.sleep(0.02)
        exc = self.fail.get(f"{op}:{detail}") or self.fail.get(op)
        if exc is not None:
            raise exc

    def _mutate(self, op: str, detail: str = "", ctx: OperationContext | None = None) -> None:
        self._call(op, detail, ctx)
        self.ops.append((op, detail))

    def _adapter(self, name: str) -> AdapterInfo | None:
        return next((adapter for adapter in self.adapters if adapter.name == name), None)

    def _add_adapter(self, name: str, description: str, *, virtual: bool = True) -> AdapterInfo:
        adapter = AdapterInfo(name, description, next(self._next_index), "Up", virtual)
        self.adapters.append(adapter)
        for family in AddressFamily:
            self.dns[(name, family)] = ()
        return adapter

    # Routes

    def default_route(self, ctx: OperationContext | None = None) -> DefaultRoute | None:
        self._call("default_route", ctx=ctx)
        for dest, mask, gateway in self.routes:
            if dest == "0.0.0.0" and mask == "0.0.0.0":
                return DefaultRoute(gateway, WIFI.index, WIFI.name)
        return None

    def add_route(self, route: RouteEntry, ctx: OperationContext | None = None) -> None:
        self._mutate("add_route", f"{route.destination}/{route.mask}", ctx)
        self.routes.add((route.destination, route.mask, route.gateway))

    def delete_route(self, route: RouteEntry, ctx: OperationContext | None = None) -> None:
        self._mutate("delete_route", f"{route.destination}/{route.mask}", ctx)
        self.routes.discard((route.destination, route.mask, route.gateway))

    def has_route(self, route: RouteEntry, ctx: OperationContext | None = None) -> bool:
        return (route.destination, route.mask, route.gateway) in self.routes

    # Adapters

    def list_adapters(self, ctx: OperationContext | None = None) -> list[AdapterInfo]:
        self._call("list_adapters", ctx=ctx)
        return list(self.adapters)

    def active_interfaces(self, ctx: OperationContext | None = None) -> list[AdapterInfo]:
        return [adapter for adapter in self.list_adapters(ctx) if adapter.status == "Up"]

    def adapter_queryable(self, name: str, ctx: OperationContext | None = None) -> bool:
        return self._adapter(name) is not None and name not in self.unqueryable

    def create_native_adapter(self, name: str, ctx: OperationContext | None = None) -> None:
        self._mutate("create_native_adapter", name, ctx)
        self._add_adapter(f"vEthernet ({name})", "Hyper-V Virtual Ethernet Adapter")

    def create_scripted_adapter(self, name: str, ctx: OperationContext | None = None) -> None:
        self._mutate("create_scripted_adapter", name, ctx)
        self._add_adapter(name, "Microsoft KM-TEST Loopback Adapter")

    def install_loopback_adapter(self, ctx: OperationContext | None = None) -> None:
        self._mutate("install_loopback_adapter", "", ctx)
        self._add_adapter(self.loopback_name, "Microsoft KM-TEST Loopback Adapter", virtual=False)

    def rename_adapter(self, name: str, new_name: str, ctx: OperationContext | None = None) -> None:
        self._mutate("rename_adapter", f"{name}->{new_name}", ctx)
        adapter = self._adapter(name)
        if adapter is not None:
            self.adapters[self.adapters.index(adapter)] = replace(adapter, name=new_name)
            for family in AddressFamily:
                self.dns[(new_name, family)] = self.dns.pop((name, family), ())

    def tunnel_driver_available(self, forwarder_path: str | None = None) -> bool:
        return self.driver_available

    def set_adapter_address(
        self, name: str, address: str, mask: str, ctx: OperationContext | None = None
    ) -> None:
        self._mutate("set_adapter_address", name, ctx)
        self.addresses[name] = (address, mask)

    def reset_adapter_address(self, name: str, ctx: OperationContext | None = None) -> None:
        self._mutate("reset_adapter_address", name, ctx)
        self.addresses.pop(name, None)

    def enable_adapter(self, name: str, ctx: OperationContext | None = None) -> None:
        self._mutate("enable_adapter", name, ctx)

    def disable_adapter(self, name: str, ctx: OperationContext | None = None) -> None:
        self._mutate("disable_adapter", name, ctx)

    def remove_adapter(
        self, name: str, method: CreationMethod, ctx: OperationContext | None = None
    ) -> None:
        self._mutate("remove_adapter", name, ctx)
        self.adapters = [adapter for adapter in self.adapters if adapter.name != name]
        self.addresses.pop(name, None)
        for key in [key for key in self.dns if key[0] == name]:
            del self.dns[key]

    # DNS

    def get_dns_servers(
        self,
        name: str,
        family: AddressFamily = AddressFamily.IPV4,
        ctx: OperationContext | None = None,
    ) -> tuple[str, ...]:
        self._call("get_dns_servers", name, ctx)
        return self.dns.get((name, family), ())

    def dns_snapshot(self, ctx: OperationContext | None = None) -> list[DnsSnapshot]:
        self._call("dns_snapshot", ctx=ctx)
        return [DnsSnapshot(alias, family, servers) for (alias, family), servers in self.dns.items()]

    def set_dns_servers(
        self,
        name: str,
        servers,
        family: AddressFamily = AddressFamily.IPV4,
        ctx: OperationContext | None = None,
    ) -> None:
        self._mutate("set_dns_servers", f"{name}/{family.value}", ctx)
        self.dns[(name, family)] = tuple(servers)

    def reset_dns(
        self,
        name: str,
        ctx: OperationContext | None = None,
        *,
        family: AddressFamily | None = None,
    ) -> None:
        if family is not None:
            self._mutate("reset_dns", f"{name}/{family.value}", ctx)
            if (name, family) in self.dns:
                self.dns[(name, family)] = ()
            return
        self._mutate("reset_dns", name, ctx)
        for key in [key for key in self.dns if key[0] == name]:
            self.dns[key] = ()

    # Firewall

    def add_firewall_block(
        self, rule: FirewallRule, group: str, ctx: OperationContext | None = None
    ) -> None:
        self._mutate("add_firewall_block", rule.name, ctx)
        self.firewall[rule.name] = (group, rule)

    def delete_firewall_rule(self, name: str, ctx: OperationContext | None = None) -> None:
        self._mutate("delete_firewall_rule", name, ctx)
        self.firewall.pop(name, None)

    def list_firewall_rules(self, group: str, ctx: OperationContext | None = None) -> list[str]:
        self._call("list_firewall_rules", group, ctx)
        return [name for name, (rule_group, _rule) in self.firewall.items() if rule_group == group]

    # Lookups

    def resolve(
        self, domain: str, server: str | None = None, ctx: OperationContext | None = None
    ) -> ResolveResult:
        self._call("resolve", domain, ctx)
        answered_by = server or self.system_resolver
        return ResolveResult(domain, None, answered_by, ("142.250.185.78",))

    def resolve_host(self, host: str, ctx: OperationContext | None = None) -> list[str]:
        self._call("resolve_host", host, ctx)
        return list(self.hosts.get(host, []))

    def process_alive(self, pid: int, ctx: OperationContext | None = None) -> bool:
        return self.alive


class FakeForwarder:
    def __init__(self, backend: FakeNetworkBackend, calls: list[str], *, fail: Exception | None = None):
        self.backend = backend
        self.calls = calls
        self.fail = fail
        self.on_exit = None
        self.launch = None
        self.running = False
        self.created: str | None = None
        self.pid = 4242

    def is_alive(self) -> bool:
        return self.running

    def start(self, launch, ctx: OperationContext) -> None:
        ctx.check()
        self.calls.append("start")
        if self.fail is not None:
            raise self.fail
        self.launch = launch
        self.running = True
        if self.backend._adapter(launch.device) is None:
            self.backend._add_adapter(launch.device, "WireGuard Wintun Userspace Tunnel")
            self.created = launch.device

    def stop(self, timeout_s: float = 5.0) -> None:
        self.calls.append("stop")
        self.running = False
        if self.created is not None:
            # The driver adapter goes away with the process.
            self.backend.adapters = [a for a in self.backend.adapters if a.name != self.created]
            for key in [key for key in self.backend.dns if key[0] == self.created]:
                del self.backend.dns[key]
            self.backend.addresses.pop(self.created, None)
            self.created = None


class FakeValidator:
    def __init__(self, report: ValidationReport | None = None, *, error: Exception | None = None):
        self.report = report or good_report()
        self.error = error
        self.calls = 0

    def validate_with_retry(self, endpoint, ctx=None, **_kwargs) -> ValidationReport:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.report


class FakeHealth:
    instances: list["FakeHealth"] = []

    def __init__(self, session, **kwargs) -> None:
        self.session = session
        self.kwargs = kwargs
        self.started = False
        self.stopped = False
        FakeHealth.instances.append(self)

    def start(self) -> None:
        self.started = True

    def stop(self, timeout_s: float = 5.0) -> None:
        self.stopped = True


def good_report(*, udp: bool = True) -> ValidationReport:
    return ValidationReport(
        tcp_reachable=True,
        authenticated=True,
        http_round_trip_ok=False,
        udp_associate_supported=udp,
        latency_ms=42,
        warnings=() if udp else ("UDP ASSOCIATE not supported - will use TCP-only mode",),
    )


def unreachable_error() -> ValidationError:
    report = ValidationReport(
        tcp_reachable=False,
        authenticated=False,
        http_round_trip_ok=False,
        udp_associate_supported=False,
        latency_ms=None,
        errors=("TCP connection to 203.0.113.9:1080 failed: timed out",),
    )
    return ValidationError("Proxy validation failed", report=report)


def fast_settings(**overrides: Any) -> TunnelSettings:
    base = TunnelSettings(
        doh_hosts=("dns.google", "unresolvable.example"),
        validation_backoff_scale_s=0.0,
    )
    return replace(base, **overrides)


@pytest.fixture
def backend() -> FakeNetworkBackend:
    return FakeNetworkBackend()


@pytest.fixture
def settings() -> TunnelSettings:
    return fast_settings()


@pytest.fixture
def make_supervisor(backend: FakeNetworkBackend):
    FakeHealth.instances.clear()

    def _make(
        settings: TunnelSettings | None = None,
        *,
        validator: Any = None,
        forwarder_fail: Exception | None = None,
        strategies=None,
        events: list | None = None,
        calls: list | None = None,
        leak_fetch=lambda _url, _timeout: "fl=1\nip=198.51.100.7\nts=1\n",
    ) -> TunnelSupervisor:
        settings = settings or fast_settings()
        calls = calls if calls is not None else []
        tester = DnsLeakTester(backend, settings, fetch=leak_fetch)
        dns_guard = DnsLeakGuard(backend, settings, leak_tester=tester)
        supervisor = TunnelSupervisor(
            settings,
            backend=backend,
            validator=validator or FakeValidator(),
            provisioner=InterfaceProvisioner(
                backend, settings, strategies=strategies, discovery_cap_s=0.2, configure_backoff_s=0.0
            ),
            dns_guard=dns_guard,
            routing=RoutingController(backend, dns_guard, settings),
            forwarder_factory=lambda _path: FakeForwarder(backend, calls, fail=forwarder_fail),
            event_sink=events.append if events is not None else None,
            privilege_check=lambda: None,
            health_factory=FakeHealth,
        )
        return supervisor

    return _make


def command_error(message: str = "boom") -> CommandError:
    return CommandError(message, returncode=1, output=message)
