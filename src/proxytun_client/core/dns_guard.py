"""Force DNS through the tunnel and block direct-path DNS, DoT and DoH.

Every change is recorded on the session (`dns_modified_interfaces`,
`added_routes`, `added_firewall_rules`) so `release` undoes exactly what
`secure` applied. Firewall rules also carry a stable name prefix and group,
which lets `purge_stale_rules` find them after a crash.
"""

from __future__ import annotations

from dataclasses import replace
import logging
from typing import Final

from proxytun_client.core.errors import (
    AppError,
    DNSError,
    OperationCancelledError,
    PhaseTimeoutError,
    PrivilegeError,
)
from proxytun_client.core.leak_test import DnsLeakTester
from proxytun_client.core.models import (
    AddressFamily,
    FirewallRule,
    InterfaceRecord,
    LeakTestReport,
    RouteBackup,
    RouteEntry,
    RoutePurpose,
    TunnelSession,
)
from proxytun_client.core.operation import OperationContext
from proxytun_client.core.settings import TunnelSettings
from proxytun_client.core.windows_net import WindowsNetworkBackend

logger = logging.getLogger(__name__)

HOST_MASK: Final[str] = "255.255.255.255"
BLOCKED_DNS_SERVER: Final[str] = "127.0.0.1"

_FATAL = (PhaseTimeoutError, OperationCancelledError, PrivilegeError)


class DnsLeakGuard:
    def __init__(
        self,
        backend: WindowsNetworkBackend,
        settings: TunnelSettings | None = None,
        *,
        leak_tester: DnsLeakTester | None = None,
    ) -> None:
        self.backend = backend
        self.settings = settings or TunnelSettings()
        self.leak_tester = leak_tester or DnsLeakTester(backend, self.settings)

    def rule_name(self, suffix: str) -> str:
        return f"{self.settings.firewall_group}-{suffix}"

    def secure(
        self,
        session: TunnelSession,
        iface: InterfaceRecord,
        ctx: OperationContext,
        *,
        harden: bool = True,
    ) -> None:
        name = iface.resolved_name
        self._backup(session, ctx)

        session.dns_modified_interfaces.append((name, AddressFamily.IPV4))
        try:
            self.backend.set_dns_servers(name, self.settings.ipv4_dns, AddressFamily.IPV4, ctx)
        except _FATAL:
            raise
        except AppError as exc:
            raise DNSError(
                f"Failed to set DNS servers on {name}: {exc}",
                user_message="Could not configure DNS on the tunnel adapter.",
            ) from exc
        logger.info("DNS on %s set to %s", name, ", ".join(self.settings.ipv4_dns))

        try:
            self.backend.set_dns_servers(name, self.settings.dns_ipv6, AddressFamily.IPV6, ctx)
        except _FATAL:
            raise
        except AppError as exc:
            # Many systems have IPv6 disabled on virtual adapters.
            session.warn(f"IPv6 DNS not applied on {name}: {exc}")
        else:
            session.dns_modified_interfaces.append((name, AddressFamily.IPV6))

        if harden:
            self._add_dns_routes(session, iface, self.settings.dns_route_servers, ctx)
            self._add_firewall_rules(session, name, ctx)
            if self.settings.block_system_dns:
                self._block_system_dns(session, name, ctx)
        else:
            session.warn("Simplified mode: DNS firewall hardening skipped")

        self._verify(session, name, ctx)

    def add_dns_routes(
        self,
        session: TunnelSession,
        iface: InterfaceRecord,
        servers: tuple[str, ...],
        ctx: OperationContext,
    ) -> None:
        self._add_dns_routes(session, iface, servers, ctx)

    def release(self, session: TunnelSession, ctx: OperationContext) -> None:
        """Undo `secure`: firewall rules, DNS routes, system DNS, then per-interface DNS."""
        failures = self.release_blocking(session, ctx) + self.restore_interface_dns(session, ctx)
        if failures:
            raise DNSError(
                "DNS release incomplete: " + "; ".join(failures),
                user_message="Some DNS settings could not be restored.",
            )
        logger.info("DNS protection released")

    def release_blocking(self, session: TunnelSession, ctx: OperationContext) -> list[str]:
        """Drop firewall rules, DNS host routes and system DNS blocking; returns failures."""
        failures: list[str] = []

        while session.added_firewall_rules:
            rule = session.added_firewall_rules.pop()
            try:
                self.backend.delete_firewall_rule(rule, ctx)
            except AppError as exc:
                logger.warning("Failed to remove firewall rule %s: %s", rule, exc)
                failures.append(f"firewall {rule}: {exc}")

        for route in reversed(session.routes_with(RoutePurpose.DNS)):
            session.added_routes.remove(route)
            try:
                self.backend.delete_route(route, ctx)
            except AppError as exc:
                logger.warning("Failed to remove DNS route %s: %s", route.describe(), exc)
                failures.append(f"route {route.destination}: {exc}")

        while session.dns_blocked_interfaces:
            alias, family = session.dns_blocked_interfaces.pop()
            failure = self._restore_interface_dns(session, alias, family, ctx)
            if failure:
                failures.append(failure)
        return failures

    def restore_interface_dns(self, session: TunnelSession, ctx: OperationContext) -> list[str]:
        """Put back the DNS servers of every interface `secure` changed; returns failures."""
        failures: list[str] = []
        while session.dns_modified_interfaces:
            alias, family = session.dns_modified_interfaces.pop()
            failure = self._restore_interface_dns(session, alias, family, ctx)
            if failure:
                failures.append(failure)
        return failures

    def run_leak_test(self, session: TunnelSession | None = None) -> LeakTestReport:
        return self.leak_tester.run(session)

    def purge_stale_rules(self, ctx: OperationContext) -> list[str]:
        """Remove rules left behind by a session that never released them."""
        removed: list[str] = []
        for rule in self.backend.list_firewall_rules(self.settings.firewall_group, ctx):
            try:
                self.backend.delete_firewall_rule(rule, ctx)
            except _FATAL:
                raise
            except AppError as exc:
                logger.warning("Could not purge stale firewall rule %s: %s", rule, exc)
                continue
            removed.append(rule)
        if removed:
            logger.info("Purged %s stale firewall rule(s)", len(removed))
        return removed

    def _backup(self, session: TunnelSession, ctx: OperationContext) -> None:
        try:
            snapshots = tuple(self.backend.dns_snapshot(ctx))
        except _FATAL:
            raise
        except AppError as exc:
            session.warn(f"DNS settings could not be backed up; will reset to automatic: {exc}")
            snapshots = ()
        if session.route_backup is None:
            session.route_backup = RouteBackup(default_route=None, dns_servers=snapshots)
        else:
            session.route_backup = replace(session.route_backup, dns_servers=snapshots)

    def _add_dns_routes(
        self,
        session: TunnelSession,
        iface: InterfaceRecord,
        servers: tuple[str, ...],
        ctx: OperationContext,
    ) -> None:
        present = {route.destination for route in session.routes_with(RoutePurpose.DNS)}
        for server in servers:
            if server in present:
                continue
            route = RouteEntry(
                destination=server,
                mask=HOST_MASK,
                gateway=iface.gateway_address,
                if_index=iface.index,
                purpose=RoutePurpose.DNS,
            )
            try:
                self.backend.add_route(route, ctx)
            except _FATAL:
                raise
            except AppError as exc:
                session.warn(f"DNS route {server} not installed: {exc}")
                continue
            session.added_routes.append(route)
            present.add(server)

    def _firewall_rules(self, tunnel_name: str, ctx: OperationContext) -> list[FirewallRule]:
        others = tuple(
            adapter.name
            for adapter in self.backend.active_interfaces(ctx)
            if adapter.name != tunnel_name
        )
        if not others:
            return []
        rules = [
            FirewallRule(self.rule_name("Block-DNS-Out"), "UDP", 53, others),
            FirewallRule(self.rule_name("Block-DNS-TCP-Out"), "TCP", 53, others),
            FirewallRule(self.rule_name("Block-DoT"), "TCP", 853, others),
        ]
        for host in self.settings.doh_hosts:
            addresses = tuple(self.backend.resolve_host(host, ctx))
            if not addresses:
                continue
            rules.append(
                FirewallRule(self.rule_name(f"Block-DoH-{host}"), "TCP", 443, others, addresses)
            )
        return rules

    def _add_firewall_rules(self, session: TunnelSession, tunnel_name: str, ctx: OperationContext) -> None:
        rules = self._firewall_rules(tunnel_name, ctx)
        if not rules:
            session.warn("No other active interfaces; DNS firewall rules not needed")
            return
        for rule in rules:
            try:
                self.backend.add_firewall_block(rule, self.settings.firewall_group, ctx)
            except _FATAL:
                raise
            except AppError as exc:
                raise DNSError(
                    f"Failed to add firewall rule {rule.name}: {exc}",
                    user_message="Could not install the DNS leak protection firewall rules.",
                ) from exc
            session.added_firewall_rules.append(rule.name)
        logger.info("Installed %s DNS firewall rule(s)", len(rules))

    def _block_system_dns(self, session: TunnelSession, tunnel_name: str, ctx: OperationContext) -> None:
        for adapter in self.backend.active_interfaces(ctx):
            if adapter.name == tunnel_name:
                continue
            session.dns_blocked_interfaces.append((adapter.name, AddressFamily.IPV4))
            try:
                self.backend.set_dns_servers(
                    adapter.name, (BLOCKED_DNS_SERVER,), AddressFamily.IPV4, ctx
                )
            except _FATAL:
                raise
            except AppError as exc:
                session.warn(f"System DNS on {adapter.name} not blocked: {exc}")

    def _verify(self, session: TunnelSession, name: str, ctx: OperationContext) -> None:
        try:
            servers = self.backend.get_dns_servers(name, AddressFamily.IPV4, ctx)
        except _FATAL:
            raise
        except AppError as exc:
            session.warn(f"Could not read back DNS servers on {name}: {exc}")
            servers = None
        if servers is not None:
            expected = (self.settings.dns_primary, self.settings.dns_secondary)
            missing = [server for server in expected if server not in servers]
            if missing:
                raise DNSError(
                    f"{name} reports DNS {list(servers)}, missing {missing}",
                    user_message="The tunnel adapter did not accept the DNS settings.",
                )

        try:
            result = self.backend.resolve(
                self.settings.leak_test_domain, self.settings.dns_primary, ctx
            )
        except _FATAL:
            raise
        except AppError as exc:
            session.warn(f"DNS resolution check failed: {exc}")
            return
        if not result.addresses:
            session.warn(
                f"Resolving {self.settings.leak_test_domain} via {self.settings.dns_primary} failed"
            )

    def _restore_interface_dns(
        self,
        session: TunnelSession,
        alias: str,
        family: AddressFamily,
        ctx: OperationContext,
    ) -> str | None:
        snapshot = (
            session.route_backup.dns_for(alias, family)
            if session.route_backup is not None
            else None
        )
        try:
            if snapshot is not None and snapshot.servers:
                self.backend.set_dns_servers(alias, snapshot.servers, family, ctx)
            else:
                self.backend.reset_dns(alias, ctx, family=family)
        except AppError as exc:
            logger.warning("Failed to restore %s DNS on %s: %s", family.value, alias, exc)
            return f"dns {alias} ({family.value}): {exc}"
        return None
