"""Full-tunnel redirection of the IPv4 default route and its exact inverse."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Final

from proxytun_client.core.dns_guard import HOST_MASK, DnsLeakGuard
from proxytun_client.core.errors import (
    AppError,
    OperationCancelledError,
    PhaseTimeoutError,
    PrivilegeError,
    RoutingError,
)
from proxytun_client.core.models import (
    DefaultRoute,
    InterfaceRecord,
    RouteBackup,
    RouteEntry,
    RoutePurpose,
    TunnelSession,
)
from proxytun_client.core.operation import OperationContext
from proxytun_client.core.settings import TunnelSettings
from proxytun_client.core.windows_net import WindowsNetworkBackend, is_ipv4

logger = logging.getLogger(__name__)

DEFAULT_DESTINATION: Final[str] = "0.0.0.0"
DEFAULT_MASK: Final[str] = "0.0.0.0"
# Two /1 routes win over any 0.0.0.0/0 without touching it.
HALF_ROUTES: Final[tuple[tuple[str, str], ...]] = (
    ("0.0.0.0", "128.0.0.0"),
    ("128.0.0.0", "128.0.0.0"),
)

_FATAL = (PhaseTimeoutError, OperationCancelledError, PrivilegeError)


@dataclass(frozen=True, slots=True)
class RoutingStatus:
    protective_route: bool
    tunnel_routes: bool
    default_route_deleted: bool

    @property
    def ok(self) -> bool:
        return self.protective_route and self.tunnel_routes


def default_route_entry(route: DefaultRoute) -> RouteEntry:
    return RouteEntry(
        destination=DEFAULT_DESTINATION,
        mask=DEFAULT_MASK,
        gateway=route.gateway,
        if_index=route.if_index,
        purpose=RoutePurpose.ORIGINAL_DEFAULT,
    )


class RoutingController:
    def __init__(
        self,
        backend: WindowsNetworkBackend,
        dns_guard: DnsLeakGuard,
        settings: TunnelSettings | None = None,
    ) -> None:
        self.backend = backend
        self.dns_guard = dns_guard
        self.settings = settings or TunnelSettings()

    def redirect(self, session: TunnelSession, ctx: OperationContext) -> None:
        iface = self._iface(session)
        original = self._snapshot(session, ctx)
        self._add_protective_route(session, original, ctx)
        try:
            if session.routes_with(RoutePurpose.PROTECTIVE):
                self._delete_default(session, original, ctx)
            else:
                # Deleting the default without the bypass would loop proxy traffic into the tunnel.
                session.warn("Original default route kept because the protective route is missing")
            self._add_half_routes(session, iface, ctx)
        except AppError as exc:
            logger.error("Redirect failed, running emergency restore: %s", exc)
            self.emergency_restore(session)
            if isinstance(exc, (*_FATAL, RoutingError)):
                raise
            raise RoutingError(
                f"Failed to redirect traffic: {exc}",
                user_message="Could not route traffic through the tunnel.",
                hint="retry",
            ) from exc
        logger.info("Traffic redirected through %s", iface.resolved_name)

    def simplified_redirect(self, session: TunnelSession, ctx: OperationContext) -> None:
        """Protective route, half routes and essential DNS routes; the default route stays."""
        iface = self._iface(session)
        session.simplified = True
        try:
            original = (
                session.route_backup.default_route
                if session.route_backup is not None and session.route_backup.default_route
                else self._snapshot(session, ctx)
            )
            if not session.routes_with(RoutePurpose.PROTECTIVE):
                self._add_protective_route(session, original, ctx)
            self._add_half_routes(session, iface, ctx)
            self.dns_guard.add_dns_routes(session, iface, self.settings.essential_dns_servers, ctx)
        except AppError as exc:
            logger.error("Simplified redirect failed, running emergency restore: %s", exc)
            self.emergency_restore(session)
            if isinstance(exc, (*_FATAL, RoutingError)):
                raise
            raise RoutingError(
                f"Simplified redirect failed: {exc}",
                user_message="Could not route traffic through the tunnel.",
                hint="retry",
            ) from exc
        session.warn("Simplified routing in use: DNS firewall hardening is off")
        logger.warning("Traffic redirected in simplified mode through %s", iface.resolved_name)

    def restore(self, session: TunnelSession, ctx: OperationContext) -> None:
        failures = self.dns_guard.release_blocking(session, ctx)

        backup = session.route_backup
        original = backup.default_route if backup is not None else None
        if session.default_route_deleted:
            if original is None:
                failures.append("original default route unknown")
            else:
                try:
                    self.backend.add_route(default_route_entry(original), ctx)
                    session.default_route_deleted = False
                    logger.info("Default route via %s restored", original.gateway)
                except AppError as exc:
                    logger.warning("Failed to restore default route: %s", exc)
                    failures.append(f"default route: {exc}")

        failures += self._delete_routes(session, RoutePurpose.TUNNEL_DEFAULT, ctx)
        if session.default_route_deleted:
            failures.append("protective route kept because the default route is still missing")
        else:
            failures += self._delete_routes(session, RoutePurpose.PROTECTIVE, ctx)

        failures += self.dns_guard.restore_interface_dns(session, ctx)
        if backup is None and session.iface is not None:
            try:
                self.backend.reset_dns(session.iface.resolved_name, ctx)
            except AppError as exc:
                failures.append(f"dns reset {session.iface.resolved_name}: {exc}")

        if failures:
            raise RoutingError(
                "Route restore incomplete: " + "; ".join(failures),
                user_message="Some network settings could not be restored.",
                hint="retry",
            )
        logger.info("Routing restored")

    def emergency_restore(self, session: TunnelSession, ctx: OperationContext | None = None) -> bool:
        """Get the machine back online: default route back, tunnel routes out, tunnel DNS reset."""
        ctx = ctx or OperationContext("emergency restore", self.settings.emergency_timeout_s)
        ok = True
        original = session.route_backup.default_route if session.route_backup else None
        if session.default_route_deleted and original is not None:
            try:
                self.backend.add_route(default_route_entry(original), ctx)
                session.default_route_deleted = False
            except AppError as exc:
                logger.error("Emergency restore could not re-add the default route: %s", exc)
                ok = False

        if self._delete_routes(session, RoutePurpose.TUNNEL_DEFAULT, ctx):
            ok = False

        if session.iface is not None:
            try:
                self.backend.reset_dns(session.iface.resolved_name, ctx)
            except AppError as exc:
                logger.warning("Emergency restore could not reset tunnel DNS: %s", exc)
                ok = False

        if not session.default_route_deleted:
            if self._delete_routes(session, RoutePurpose.PROTECTIVE, ctx):
                ok = False
        logger.warning("Emergency restore finished (%s)", "clean" if ok else "incomplete")
        return ok

    def verify(self, session: TunnelSession, ctx: OperationContext | None = None) -> RoutingStatus:
        protective = session.routes_with(RoutePurpose.PROTECTIVE)
        tunnel = session.routes_with(RoutePurpose.TUNNEL_DEFAULT)
        return RoutingStatus(
            protective_route=bool(protective)
            and all(self.backend.has_route(route, ctx) for route in protective),
            tunnel_routes=bool(tunnel) and all(self.backend.has_route(route, ctx) for route in tunnel),
            default_route_deleted=session.default_route_deleted,
        )

    def _iface(self, session: TunnelSession) -> InterfaceRecord:
        if session.iface is None:
            raise RoutingError("No tunnel interface provisioned")
        return session.iface

    def _snapshot(self, session: TunnelSession, ctx: OperationContext) -> DefaultRoute:
        original = self.backend.default_route(ctx)
        if original is None:
            raise RoutingError(
                "No IPv4 default route found",
                user_message="No active internet connection was found.",
                hint="check-connectivity",
            )
        dns = session.route_backup.dns_servers if session.route_backup is not None else ()
        session.route_backup = RouteBackup(default_route=original, dns_servers=dns)
        logger.info(
            "Original default route: via %s (if %s)", original.gateway, original.if_index
        )
        return original

    def _proxy_ip(self, session: TunnelSession, ctx: OperationContext) -> str | None:
        endpoint = session.endpoint
        if endpoint.is_ip_literal:
            return endpoint.host if is_ipv4(endpoint.host) else None
        addresses = self.backend.resolve_host(endpoint.host, ctx)
        return addresses[0] if addresses else None

    def _add_protective_route(
        self, session: TunnelSession, original: DefaultRoute, ctx: OperationContext
    ) -> None:
        proxy_ip = self._proxy_ip(session, ctx)
        if proxy_ip is None:
            session.warn(f"Could not resolve {session.endpoint.host} to IPv4; no protective route")
            return
        session.proxy_server_ip = proxy_ip
        route = RouteEntry(
            destination=proxy_ip,
            mask=HOST_MASK,
            gateway=original.gateway,
            if_index=original.if_index,
            purpose=RoutePurpose.PROTECTIVE,
        )
        try:
            self.backend.add_route(route, ctx)
        except _FATAL:
            raise
        except AppError as exc:
            session.warn(f"Protective route to {proxy_ip} not installed: {exc}")
            return
        session.added_routes.append(route)
        self._verify_mutation(session, route, present=True, ctx=ctx)

    def _delete_default(
        self, session: TunnelSession, original: DefaultRoute, ctx: OperationContext
    ) -> None:
        route = default_route_entry(original)
        self.backend.delete_route(route, ctx)
        session.default_route_deleted = True
        self._verify_mutation(session, route, present=False, ctx=ctx)

    def _add_half_routes(
        self, session: TunnelSession, iface: InterfaceRecord, ctx: OperationContext
    ) -> None:
        present = {
            (route.destination, route.mask)
            for route in session.routes_with(RoutePurpose.TUNNEL_DEFAULT)
        }
        for destination, mask in HALF_ROUTES:
            if (destination, mask) in present:
                continue
            route = RouteEntry(
                destination=destination,
                mask=mask,
                gateway=iface.gateway_address,
                if_index=iface.index,
                purpose=RoutePurpose.TUNNEL_DEFAULT,
            )
            self.backend.add_route(route, ctx)
            session.added_routes.append(route)
            self._verify_mutation(session, route, present=True, ctx=ctx)

    def _delete_routes(
        self, session: TunnelSession, purpose: RoutePurpose, ctx: OperationContext
    ) -> list[str]:
        failures: list[str] = []
        for route in reversed(session.routes_with(purpose)):
            try:
                self.backend.delete_route(route, ctx)
            except AppError as exc:
                logger.warning("Failed to delete route %s: %s", route.describe(), exc)
                failures.append(f"route {route.describe()}: {exc}")
                continue
            session.added_routes.remove(route)
        return failures

    def _verify_mutation(
        self, session: TunnelSession, route: RouteEntry, *, present: bool, ctx: OperationContext
    ) -> None:
        try:
            found = self.backend.has_route(route, ctx)
        except _FATAL:
            raise
        except AppError as exc:
            logger.info("Route table read failed after change to %s: %s", route.describe(), exc)
            return
        if found != present:
            session.warn(
                f"Route table does not show {route.describe()} as {'added' if present else 'removed'}"
            )
