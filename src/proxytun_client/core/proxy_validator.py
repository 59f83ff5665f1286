"""Proxy reachability and protocol checks run before any OS state is touched."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import logging
import socket
import struct
import time
from typing import Final
import urllib.error
import urllib.request
from urllib.parse import urlsplit

from proxytun_client.core.errors import ValidationError
from proxytun_client.core.models import ProxyEndpoint, ProxyKind, ValidationReport
from proxytun_client.core.operation import OperationContext
from proxytun_client.core.settings import TunnelSettings

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_S: Final[float] = 5.0
HTTP_CHECK_TIMEOUT_S: Final[float] = 8.0
USER_AGENT: Final[str] = "proxytun-client/0.1"

UDP_UNSUPPORTED_WARNING: Final[str] = "UDP ASSOCIATE not supported - will use TCP-only mode"

SOCKS5_VERSION: Final[int] = 0x05
_METHOD_NO_AUTH: Final[int] = 0x00
_METHOD_USER_PASS: Final[int] = 0x02
_METHOD_NONE_ACCEPTABLE: Final[int] = 0xFF
_CMD_CONNECT: Final[int] = 0x01
_CMD_UDP_ASSOCIATE: Final[int] = 0x03
_ATYP_IPV4: Final[int] = 0x01
_ATYP_DOMAIN: Final[int] = 0x03
_ATYP_IPV6: Final[int] = 0x04

_REPLY_MESSAGES: Final[dict[int, str]] = {
    0x01: "general SOCKS server failure",
    0x02: "connection not allowed by ruleset",
    0x03: "network unreachable",
    0x04: "host unreachable",
    0x05: "connection refused",
    0x06: "TTL expired",
    0x07: "command not supported",
    0x08: "address type not supported",
}


class Socks5Error(Exception):
    def __init__(self, message: str, *, reply_code: int | None = None) -> None:
        super().__init__(message)
        self.reply_code = reply_code


def _recv_exact(sock: socket.socket, size: int) -> bytes:
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            raise Socks5Error("proxy closed the connection")
        data += chunk
    return data


def _read_line(sock: socket.socket, limit: int = 1024) -> str:
    data = b""
    while not data.endswith(b"\r\n") and len(data) < limit:
        chunk = sock.recv(1)
        if not chunk:
            break
        data += chunk
    return data.decode("latin-1").strip()


def _status_code(status_line: str) -> int | None:
    parts = status_line.split()
    if len(parts) >= 2 and parts[0].startswith("HTTP/") and parts[1].isdigit():
        return int(parts[1])
    return None


def socks5_negotiate(sock: socket.socket, endpoint: ProxyEndpoint) -> None:
    """Greeting plus RFC 1929 username/password sub-negotiation when offered."""
    if endpoint.has_auth:
        sock.sendall(bytes([SOCKS5_VERSION, 0x02, _METHOD_NO_AUTH, _METHOD_USER_PASS]))
    else:
        sock.sendall(bytes([SOCKS5_VERSION, 0x01, _METHOD_NO_AUTH]))

    version, method = _recv_exact(sock, 2)
    if version != SOCKS5_VERSION:
        raise Socks5Error(f"not a SOCKS5 server (version byte {version:#04x})")
    if method == _METHOD_NONE_ACCEPTABLE:
        raise Socks5Error("proxy accepted none of the offered authentication methods")
    if method == _METHOD_NO_AUTH:
        return
    if method != _METHOD_USER_PASS:
        raise Socks5Error(f"proxy selected unsupported authentication method {method:#04x}")
    if not endpoint.has_auth:
        raise Socks5Error("proxy requires a username and password")

    username = (endpoint.username or "").encode("utf-8")
    password = (endpoint.password or "").encode("utf-8")
    sock.sendall(bytes([0x01, len(username)]) + username + bytes([len(password)]) + password)
    _auth_version, status = _recv_exact(sock, 2)
    if status != 0x00:
        raise Socks5Error("proxy rejected the username or password")


def _read_bound_address(sock: socket.socket, atyp: int) -> None:
    if atyp == _ATYP_IPV4:
        _recv_exact(sock, 4 + 2)
    elif atyp == _ATYP_DOMAIN:
        length = _recv_exact(sock, 1)[0]
        _recv_exact(sock, length + 2)
    elif atyp == _ATYP_IPV6:
        _recv_exact(sock, 16 + 2)
    else:
        raise Socks5Error(f"unknown address type {atyp:#04x} in reply")


def socks5_request(sock: socket.socket, command: int, host: str, port: int) -> None:
    request = bytes([SOCKS5_VERSION, command, 0x00])
    try:
        request += bytes([_ATYP_IPV4]) + socket.inet_aton(host)
    except OSError:
        host_bytes = host.encode("idna")
        request += bytes([_ATYP_DOMAIN, len(host_bytes)]) + host_bytes
    request += struct.pack("!H", port)
    sock.sendall(request)

    version, reply, _reserved, atyp = _recv_exact(sock, 4)
    if version != SOCKS5_VERSION:
        raise Socks5Error(f"bad reply version {version:#04x}")
    if reply != 0x00:
        raise Socks5Error(
            _REPLY_MESSAGES.get(reply, f"unknown reply code {reply:#04x}"), reply_code=reply
        )
    _read_bound_address(sock, atyp)


class ProxyValidator:
    def __init__(self, settings: TunnelSettings | None = None) -> None:
        self.settings = settings or TunnelSettings()

    def _connect(self, endpoint: ProxyEndpoint, ctx: OperationContext) -> socket.socket:
        sock = socket.create_connection(
            (endpoint.host, endpoint.port), timeout=ctx.bound(CONNECT_TIMEOUT_S)
        )
        sock.settimeout(ctx.bound(HTTP_CHECK_TIMEOUT_S))
        return sock

    def validate(
        self,
        endpoint: ProxyEndpoint,
        ctx: OperationContext | None = None,
        *,
        skip_http_check: bool | None = None,
    ) -> ValidationReport:
        endpoint.validate()
        ctx = ctx or OperationContext("validating", self.settings.validation_timeout_s)
        skip = self.settings.skip_http_check if skip_http_check is None else skip_http_check
        errors: list[str] = []
        warnings: list[str] = []
        ctx.check()

        logger.info("Validating proxy %s", endpoint.display())
        started = time.monotonic()
        try:
            sock = self._connect(endpoint, ctx)
        except OSError as exc:
            logger.warning("Proxy %s unreachable: %s", endpoint.display(), exc)
            errors.append(f"TCP connection to {endpoint.host}:{endpoint.port} failed: {exc}")
            return ValidationReport(
                tcp_reachable=False,
                authenticated=False,
                http_round_trip_ok=False,
                udp_associate_supported=False,
                latency_ms=None,
                errors=tuple(errors),
            )

        if endpoint.kind is ProxyKind.HTTP:
            sock.close()
            status, error = self._http_check_via_http_proxy(endpoint, ctx)
            latency_ms = int((time.monotonic() - started) * 1000)
            authenticated = status is not None and status != 407
            round_trip_ok = status is not None and 200 <= status < 400
            if status == 407:
                errors.append("HTTP proxy rejected the credentials (407)")
            elif status is None:
                errors.append(f"HTTP proxy did not relay a request: {error}")
            elif not round_trip_ok:
                warnings.append(f"HTTP check through proxy returned status {status}")
            warnings.append("HTTP proxies cannot relay UDP - will use TCP-only mode")
            return ValidationReport(
                tcp_reachable=True,
                authenticated=authenticated,
                http_round_trip_ok=round_trip_ok,
                udp_associate_supported=False,
                latency_ms=latency_ms,
                errors=tuple(errors),
                warnings=tuple(warnings),
            )

        try:
            with sock:
                socks5_negotiate(sock, endpoint)
                socks5_request(
                    sock,
                    _CMD_CONNECT,
                    self.settings.validation_target_host,
                    self.settings.validation_target_port,
                )
                status_line = self._send_http_request(
                    sock, self.settings.validation_target_host, "/", method="HEAD"
                )
        except (Socks5Error, OSError) as exc:
            logger.warning("SOCKS5 handshake with %s failed: %s", endpoint.display(), exc)
            errors.append(f"SOCKS5 handshake failed: {exc}")
            return ValidationReport(
                tcp_reachable=True,
                authenticated=False,
                http_round_trip_ok=False,
                udp_associate_supported=False,
                latency_ms=int((time.monotonic() - started) * 1000),
                errors=tuple(errors),
            )
        if _status_code(status_line) is None:
            errors.append(f"No HTTP response through the proxy (got {status_line!r})")
            return ValidationReport(
                tcp_reachable=True,
                authenticated=False,
                http_round_trip_ok=False,
                udp_associate_supported=False,
                latency_ms=int((time.monotonic() - started) * 1000),
                errors=tuple(errors),
            )
        handshake_done = time.monotonic()

        # The HTTP check and the UDP check are read-only and independent.
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="proxytun-validate") as pool:
            http_future = None if skip else pool.submit(self._http_check_via_socks, endpoint, ctx)
            udp_future = pool.submit(self._udp_associate_supported, endpoint, ctx)
            round_trip_ok = False
            finished = handshake_done
            if http_future is not None:
                round_trip_ok, detail, finished = http_future.result()
                if not round_trip_ok:
                    warnings.append(f"HTTP check through proxy failed: {detail}")
            udp_supported, udp_detail = udp_future.result()

        if not udp_supported:
            logger.info("UDP ASSOCIATE unsupported by %s: %s", endpoint.display(), udp_detail)
            warnings.append(UDP_UNSUPPORTED_WARNING)

        report = ValidationReport(
            tcp_reachable=True,
            authenticated=True,
            http_round_trip_ok=round_trip_ok,
            udp_associate_supported=udp_supported,
            latency_ms=int((finished - started) * 1000),
            errors=tuple(errors),
            warnings=tuple(warnings),
        )
        logger.info(
            "Proxy %s validated: latency=%sms udp=%s http=%s",
            endpoint.display(),
            report.latency_ms,
            report.udp_associate_supported,
            report.http_round_trip_ok,
        )
        return report

    def validate_with_retry(
        self,
        endpoint: ProxyEndpoint,
        ctx: OperationContext | None = None,
        *,
        attempts: int | None = None,
        skip_http_check: bool | None = None,
    ) -> ValidationReport:
        """Validate with exponential backoff (2**attempt seconds between tries)."""
        endpoint.validate()
        outer = ctx or OperationContext("validating", None)
        total = attempts or self.settings.validation_attempts
        report: ValidationReport | None = None
        for attempt in range(1, total + 1):
            attempt_ctx = outer.child(self.settings.validation_timeout_s)
            report = self.validate(endpoint, attempt_ctx, skip_http_check=skip_http_check)
            if report.ok:
                return report
            logger.warning(
                "Validation attempt %s/%s failed: %s", attempt, total, "; ".join(report.errors)
            )
            if attempt < total:
                outer.sleep(self.settings.validation_backoff_scale_s * 2**attempt)

        assert report is not None
        if not report.tcp_reachable:
            user_message = f"Cannot reach the proxy server at {endpoint.host}:{endpoint.port}."
        else:
            user_message = "The proxy refused the connection or rejected the credentials."
        raise ValidationError(
            f"Proxy validation failed: {'; '.join(report.errors)}",
            user_message=user_message,
            report=report,
        )

    def _send_http_request(
        self, sock: socket.socket, host: str, path: str, *, method: str = "GET"
    ) -> str:
        request = (
            f"{method} {path} HTTP/1.1\r\n"
            f"Host: {host}\r\n"
            f"User-Agent: {USER_AGENT}\r\n"
            "Connection: close\r\n\r\n"
        )
        sock.sendall(request.encode("ascii"))
        return _read_line(sock)

    def _http_check_via_socks(
        self, endpoint: ProxyEndpoint, ctx: OperationContext
    ) -> tuple[bool, str, float]:
        parts = urlsplit(self.settings.http_check_url)
        host = parts.hostname or self.settings.validation_target_host
        port = parts.port or 80
        path = parts.path or "/"
        try:
            with self._connect(endpoint, ctx) as sock:
                socks5_negotiate(sock, endpoint)
                socks5_request(sock, _CMD_CONNECT, host, port)
                status_line = self._send_http_request(sock, host, path)
        except (Socks5Error, OSError) as exc:
            return False, str(exc), time.monotonic()
        status = _status_code(status_line)
        return status == 200, status_line or "empty response", time.monotonic()

    def _http_check_via_http_proxy(
        self, endpoint: ProxyEndpoint, ctx: OperationContext
    ) -> tuple[int | None, str | None]:
        proxy_url = endpoint.proxy_url()
        handler = urllib.request.ProxyHandler({"http": proxy_url, "https": proxy_url})
        opener = urllib.request.build_opener(handler)
        request = urllib.request.Request(
            self.settings.http_check_url,
            headers={"User-Agent": USER_AGENT},
            method="GET",
        )
        try:
            with opener.open(request, timeout=ctx.bound(HTTP_CHECK_TIMEOUT_S)) as response:
                status = getattr(response, "status", None)
                response.read(1)
        except urllib.error.HTTPError as exc:
            return int(exc.code), f"HTTP {exc.code} {exc.reason}"
        except (urllib.error.URLError, OSError) as exc:
            return None, str(exc)
        return (int(status) if status is not None else 200), None

    def _udp_associate_supported(
        self, endpoint: ProxyEndpoint, ctx: OperationContext
    ) -> tuple[bool, str]:
        try:
            with self._connect(endpoint, ctx) as sock:
                socks5_negotiate(sock, endpoint)
                socks5_request(sock, _CMD_UDP_ASSOCIATE, "0.0.0.0", 0)
        except Socks5Error as exc:
            return False, str(exc)
        except OSError as exc:
            return False, f"check failed: {exc}"
        return True, "supported"
