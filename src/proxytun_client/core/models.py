"""Value types shared by the tunnel components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import ipaddress
from typing import Any, Mapping
from urllib.parse import quote, unquote, urlsplit

from proxytun_client.core.errors import ConfigurationError


class ProxyKind(str, Enum):
    SOCKS5 = "socks5"
    HTTP = "http"


_SCHEME_ALIASES: dict[str, ProxyKind] = {
    "socks5": ProxyKind.SOCKS5,
    "socks5h": ProxyKind.SOCKS5,
    "socks": ProxyKind.SOCKS5,
    "http": ProxyKind.HTTP,
}


@dataclass(frozen=True, slots=True)
class ProxyEndpoint:
    host: str
    port: int
    kind: ProxyKind = ProxyKind.SOCKS5
    username: str | None = None
    password: str | None = field(default=None, repr=False)

    def validate(self) -> None:
        """Reject malformed endpoints before anything touches the network."""
        if not isinstance(self.host, str) or not self.host.strip():
            raise ConfigurationError(
                "Proxy host is empty", user_message="Enter the proxy server address."
            )
        if any(ch.isspace() for ch in self.host) or "/" in self.host:
            raise ConfigurationError(
                f"Invalid proxy host: {self.host!r}",
                user_message="The proxy server address is not valid.",
            )
        if isinstance(self.port, bool) or not isinstance(self.port, int) or not 1 <= self.port <= 65535:
            raise ConfigurationError(
                f"Proxy port out of range: {self.port!r}",
                user_message="The proxy port must be between 1 and 65535.",
            )
        if not isinstance(self.kind, ProxyKind):
            raise ConfigurationError(
                f"Unsupported proxy kind: {self.kind!r}",
                user_message="Only SOCKS5 and HTTP proxies are supported.",
            )
        if bool(self.username) != bool(self.password):
            raise ConfigurationError(
                "Proxy username and password must be given together",
                user_message="Enter both a username and a password, or neither.",
            )
        # RFC 1929 length fields are single bytes over the UTF-8 encoding.
        if self.username is not None and (
            len(self.username.encode("utf-8")) > 255
            or len((self.password or "").encode("utf-8")) > 255
        ):
            raise ConfigurationError(
                "Proxy credentials longer than 255 bytes",
                user_message="The proxy username or password is too long.",
            )

    @property
    def has_auth(self) -> bool:
        return bool(self.username)

    @property
    def is_ip_literal(self) -> bool:
        try:
            ipaddress.ip_address(self.host)
        except ValueError:
            return False
        return True

    def proxy_url(self, *, include_credentials: bool = True) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        auth = ""
        if include_credentials and self.has_auth:
            auth = f"{quote(self.username or '', safe='')}:{quote(self.password or '', safe='')}@"
        return f"{self.kind.value}://{auth}{host}:{self.port}"

    def display(self) -> str:
        return self.proxy_url(include_credentials=False)

    @classmethod
    def from_url(cls, url: str) -> "ProxyEndpoint":
        raw = (url or "").strip()
        if "://" not in raw:
            raw = f"socks5://{raw}"
        try:
            parts = urlsplit(raw)
            port = parts.port
        except ValueError as exc:
            raise ConfigurationError(
                f"Invalid proxy URL: {exc}", user_message="The proxy address is not valid."
            ) from exc
        kind = _SCHEME_ALIASES.get(parts.scheme.lower())
        if kind is None:
            raise ConfigurationError(
                f"Unsupported proxy scheme: {parts.scheme!r}",
                user_message="Only socks5:// and http:// proxies are supported.",
            )
        if port is None:
            raise ConfigurationError(
                "Proxy URL has no port", user_message="The proxy address needs a port."
            )
        endpoint = cls(
            host=parts.hostname or "",
            port=port,
            kind=kind,
            username=unquote(parts.username) if parts.username else None,
            password=unquote(parts.password) if parts.password else None,
        )
        endpoint.validate()
        return endpoint

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProxyEndpoint":
        kind_raw = str(data.get("kind") or data.get("type") or "socks5").lower()
        kind = _SCHEME_ALIASES.get(kind_raw)
        if kind is None:
            raise ConfigurationError(
                f"Unsupported proxy kind: {kind_raw!r}",
                user_message="Only SOCKS5 and HTTP proxies are supported.",
            )
        port_raw = data.get("port")
        try:
            port = int(port_raw)  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(
                f"Invalid proxy port: {port_raw!r}",
                user_message="The proxy port must be a number.",
            ) from exc
        endpoint = cls(
            host=str(data.get("host") or "").strip(),
            port=port,
            kind=kind,
            username=data.get("username") or None,
            password=data.get("password") or None,
        )
        endpoint.validate()
        return endpoint

    def to_dict(self) -> dict[str, Any]:
        """Serializable form without the password."""
        return {
            "host": self.host,
            "port": self.port,
            "kind": self.kind.value,
            "username": self.username,
        }


@dataclass(frozen=True, slots=True)
class ValidationReport:
    tcp_reachable: bool
    authenticated: bool
    http_round_trip_ok: bool
    udp_associate_supported: bool
    latency_ms: int | None
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.tcp_reachable and self.authenticated


class CreationMethod(str, Enum):
    REUSED = "reused"
    NATIVE_ADAPTER = "native-adapter"
    SCRIPTED_ADAPTER = "scripted-adapter"
    LOOPBACK_ADAPTER = "loopback-adapter"
    TUNNEL_DRIVER = "tunnel-driver"
    VIRTUAL_FALLBACK = "virtual-fallback"


@dataclass(frozen=True, slots=True)
class AdapterInfo:
    """One row of the OS adapter table."""

    name: str
    description: str = ""
    index: int | None = None
    status: str = ""
    virtual: bool = False


@dataclass(frozen=True, slots=True)
class InterfaceRecord:
    requested_name: str
    resolved_name: str
    index: int | None
    creation_method: CreationMethod
    gateway_address: str
    local_address: str
    subnet_mask: str
    # Adapter creation is left to the forwarding process; discovery and
    # addressing happen after it starts.
    deferred: bool = False
    created: bool = True


class RoutePurpose(str, Enum):
    PROTECTIVE = "protective"
    ORIGINAL_DEFAULT = "original-default"
    TUNNEL_DEFAULT = "tunnel-default"
    DNS = "dns"


@dataclass(frozen=True, slots=True)
class RouteEntry:
    destination: str
    mask: str
    gateway: str
    if_index: int | None = None
    metric: int = 1
    purpose: RoutePurpose = RoutePurpose.DNS

    def describe(self) -> str:
        via = f" if {self.if_index}" if self.if_index is not None else ""
        return f"{self.destination}/{self.mask} via {self.gateway}{via}"


@dataclass(frozen=True, slots=True)
class DefaultRoute:
    gateway: str
    if_index: int | None = None
    interface_alias: str | None = None


class AddressFamily(str, Enum):
    IPV4 = "IPv4"
    IPV6 = "IPv6"


@dataclass(frozen=True, slots=True)
class DnsSnapshot:
    interface: str
    family: AddressFamily
    servers: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class RouteBackup:
    default_route: DefaultRoute | None
    dns_servers: tuple[DnsSnapshot, ...] = ()

    def dns_for(self, interface: str, family: AddressFamily = AddressFamily.IPV4) -> DnsSnapshot | None:
        for snapshot in self.dns_servers:
            if snapshot.interface == interface and snapshot.family is family:
                return snapshot
        return None


@dataclass(frozen=True, slots=True)
class FirewallRule:
    name: str
    protocol: str
    remote_port: int
    interface_aliases: tuple[str, ...] = ()
    remote_addresses: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ResolveResult:
    domain: str
    server_name: str | None
    server_address: str | None
    addresses: tuple[str, ...]


class SessionState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    PROVISIONING = "provisioning"
    STARTING_FORWARDER = "starting_forwarder"
    REDIRECTING = "redirecting"
    SECURING_DNS = "securing_dns"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    ERROR = "error"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class TunnelSession:
    """Aggregate root for one connect/disconnect cycle."""

    id: str
    endpoint: ProxyEndpoint
    validation: ValidationReport | None = None
    iface: InterfaceRecord | None = None
    route_backup: RouteBackup | None = None
    added_routes: list[RouteEntry] = field(default_factory=list)
    added_firewall_rules: list[str] = field(default_factory=list)
    # Interfaces whose DNS servers were changed, for precise restoration.
    dns_modified_interfaces: list[tuple[str, AddressFamily]] = field(default_factory=list)
    dns_blocked_interfaces: list[tuple[str, AddressFamily]] = field(default_factory=list)
    default_route_deleted: bool = False
    proxy_server_ip: str | None = None
    tcp_only: bool = False
    simplified: bool = False
    state: SessionState = SessionState.IDLE
    started_at: datetime = field(default_factory=utc_now)
    last_health_check: datetime | None = None
    external_ip: str | None = None
    warnings: list[str] = field(default_factory=list)

    def routes_with(self, purpose: RoutePurpose) -> list[RouteEntry]:
        return [route for route in self.added_routes if route.purpose is purpose]

    def warn(self, message: str) -> None:
        self.warnings.append(message)


class SubTestStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    ERROR = "ERROR"


@dataclass(frozen=True, slots=True)
class LeakSubTest:
    name: str
    status: SubTestStatus
    details: str = ""


@dataclass(frozen=True, slots=True)
class Recommendation:
    priority: str
    issue: str
    solution: str


@dataclass(frozen=True, slots=True)
class LeakTestReport:
    timestamp: datetime
    has_leaks: bool
    tests: tuple[LeakSubTest, ...]
    tests_passed: int
    total_tests: int
    success_rate: float
    classification: str
    resolved_servers: tuple[str, ...] = ()
    egress_ip: str | None = None
    recommendations: tuple[Recommendation, ...] = ()


# Events delivered to the event sink.


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    phase: str
    message: str
    progress_percent: int


@dataclass(frozen=True, slots=True)
class ConnectionEvent:
    connected: bool
    endpoint: ProxyEndpoint | None
    session_id: str | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class HealthEvent:
    is_healthy: bool
    external_ip: str | None
    timestamp: datetime
    was_healthy: bool | None = None


@dataclass(frozen=True, slots=True)
class ExternalIpChangedEvent:
    external_ip: str
    previous_ip: str | None
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class LeakTestEvent:
    has_leaks: bool
    report: LeakTestReport


@dataclass(frozen=True, slots=True)
class ForwarderCrashEvent:
    exit_code: int | None
    detail: str
