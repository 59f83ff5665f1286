"""Tunnel settings loaded from the user config directory."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
import ipaddress
import logging
from pathlib import Path
from typing import Any, Final

from proxytun_client.core.errors import ConfigurationError
from proxytun_client.core.storage import get_config_dir, load_json

logger = logging.getLogger(__name__)

SETTINGS_FILE: Final[str] = "settings.json"

DEFAULT_INTERFACE_NAME: Final[str] = "ProxyTun"

# Public resolvers pulled into the tunnel with host routes.
DEFAULT_DNS_ROUTE_SERVERS: Final[tuple[str, ...]] = (
    "8.8.8.8",
    "8.8.4.4",
    "1.1.1.1",
    "1.0.0.1",
    "208.67.222.222",
    "208.67.220.220",
    "9.9.9.9",
    "149.112.112.112",
    "76.76.19.19",
    "76.76.76.76",
    "64.6.64.6",
    "64.6.65.6",
    "77.88.8.8",
    "77.88.8.1",
)

DEFAULT_DOH_HOSTS: Final[tuple[str, ...]] = (
    "cloudflare-dns.com",
    "dns.google",
    "dns.quad9.net",
    "doh.opendns.com",
    "doh.cleanbrowsing.org",
)

DEFAULT_IP_ECHO_URLS: Final[tuple[str, ...]] = (
    "https://api.ipify.org",
    "https://ifconfig.me/ip",
    "https://icanhazip.com",
)


@dataclass(frozen=True, slots=True)
class TunnelSettings:
    interface_name: str = DEFAULT_INTERFACE_NAME
    tunnel_local_address: str = "10.0.0.1"
    tunnel_gateway: str = "10.0.0.2"
    tunnel_subnet_mask: str = "255.255.255.0"
    mtu: int = 1500

    dns_primary: str = "8.8.8.8"
    dns_secondary: str = "1.1.1.1"
    dns_backup: str = "208.67.222.222"
    dns_ipv6: tuple[str, ...] = ("2001:4860:4860::8888", "2606:4700:4700::1111")
    dns_route_servers: tuple[str, ...] = DEFAULT_DNS_ROUTE_SERVERS
    essential_dns_servers: tuple[str, ...] = ("8.8.8.8", "1.1.1.1")
    doh_hosts: tuple[str, ...] = DEFAULT_DOH_HOSTS
    firewall_group: str = "ProxyTun"
    block_system_dns: bool = False
    leak_test_domain: str = "google.com"
    trace_url: str = "https://1.1.1.1/cdn-cgi/trace"

    validation_target_host: str = "httpbin.org"
    validation_target_port: int = 80
    http_check_url: str = "http://httpbin.org/ip"
    skip_http_check: bool = True
    validation_attempts: int = 2
    validation_backoff_scale_s: float = 1.0

    validation_timeout_s: float = 10.0
    provisioning_timeout_s: float = 30.0
    forwarder_timeout_s: float = 30.0
    routing_timeout_s: float = 45.0
    dns_timeout_s: float = 60.0
    simplified_routing_timeout_s: float = 20.0
    teardown_timeout_s: float = 30.0
    emergency_timeout_s: float = 20.0

    health_interval_s: float = 30.0
    ip_echo_urls: tuple[str, ...] = DEFAULT_IP_ECHO_URLS
    forwarder_path: str | None = None
    require_elevation: bool = True

    @property
    def trusted_dns(self) -> frozenset[str]:
        """Resolvers whose answers do not count as a leak."""
        return frozenset(
            (self.dns_primary, self.dns_secondary, self.dns_backup)
            + self.dns_route_servers
            + self.dns_ipv6
        )

    @property
    def ipv4_dns(self) -> tuple[str, str, str]:
        return (self.dns_primary, self.dns_secondary, self.dns_backup)

    def check(self) -> None:
        for name in (
            "tunnel_local_address",
            "tunnel_gateway",
            "tunnel_subnet_mask",
            "dns_primary",
            "dns_secondary",
            "dns_backup",
        ):
            _require_ipv4(name, getattr(self, name))
        for address in self.dns_route_servers + self.essential_dns_servers:
            _require_ipv4("dns_route_servers", address)
        for address in self.dns_ipv6:
            try:
                ipaddress.IPv6Address(address)
            except ValueError as exc:
                raise ConfigurationError(f"Invalid IPv6 DNS server: {address!r}") from exc
        if not self.interface_name.strip():
            raise ConfigurationError("interface_name must not be empty")
        if not 576 <= self.mtu <= 9000:
            raise ConfigurationError(f"mtu out of range: {self.mtu}")
        if self.validation_attempts < 1:
            raise ConfigurationError("validation_attempts must be at least 1")
        for field_ in fields(self):
            if field_.name.endswith("_timeout_s") or field_.name == "health_interval_s":
                if getattr(self, field_.name) <= 0:
                    raise ConfigurationError(f"{field_.name} must be positive")


def _require_ipv4(name: str, value: str) -> None:
    try:
        ipaddress.IPv4Address(value)
    except ValueError as exc:
        raise ConfigurationError(
            f"Invalid IPv4 address for {name}: {value!r}",
            user_message=f"Setting {name} is not a valid IPv4 address.",
        ) from exc


def _coerce(name: str, default: Any, raw: Any) -> Any:
    if isinstance(default, bool):
        if not isinstance(raw, bool):
            raise ConfigurationError(f"Setting {name} must be true or false")
        return raw
    if isinstance(default, int) and not isinstance(default, bool):
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise ConfigurationError(f"Setting {name} must be an integer")
        return raw
    if isinstance(default, float):
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            raise ConfigurationError(f"Setting {name} must be a number")
        return float(raw)
    if isinstance(default, tuple):
        if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
            raise ConfigurationError(f"Setting {name} must be a list of strings")
        return tuple(raw)
    if raw is None or isinstance(raw, str):
        return raw
    raise ConfigurationError(f"Setting {name} must be a string")


def settings_from_dict(data: dict[str, Any]) -> TunnelSettings:
    base = TunnelSettings()
    known = {field_.name for field_ in fields(TunnelSettings)}
    overrides: dict[str, Any] = {}
    for key, raw in data.items():
        if key not in known:
            logger.warning("Ignoring unknown setting: %s", key)
            continue
        overrides[key] = _coerce(key, getattr(base, key), raw)
    settings = replace(base, **overrides)
    settings.check()
    return settings


def load_settings(path: Path | None = None) -> TunnelSettings:
    settings_path = path or get_config_dir() / SETTINGS_FILE
    data = load_json(settings_path, {})
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"{settings_path} must contain a JSON object",
            user_message="The settings file is malformed.",
        )
    settings = settings_from_dict(data)
    if data:
        logger.info("Loaded settings overrides from %s: %s", settings_path, sorted(data))
    return settings
