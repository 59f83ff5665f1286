"""Periodic health checks for a connected tunnel.

The tunnel counts as healthy when the forwarder process is alive *and* an
IP-echo service answers with a syntactically valid address. Because all
traffic already flows through the tunnel, a plain urllib request is enough
to observe the egress address.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import ipaddress
import logging
import threading
from typing import Callable, Sequence
import urllib.error
import urllib.request

from proxytun_client.core.errors import AppError
from proxytun_client.core.events import EventSink, deliver
from proxytun_client.core.models import (
    ExternalIpChangedEvent,
    HealthEvent,
    TunnelSession,
    utc_now,
)
from proxytun_client.core.settings import TunnelSettings
from proxytun_client.core.windows_net import WindowsNetworkBackend

logger = logging.getLogger(__name__)

IP_FETCH_TIMEOUT_S = 5.0

FetchIp = Callable[[Sequence[str], float], str | None]


def fetch_external_ip(urls: Sequence[str], timeout_s: float = IP_FETCH_TIMEOUT_S) -> str | None:
    """First valid IPv4/IPv6 answer from the echo services, or None."""
    opener = urllib.request.build_opener()
    for url in urls:
        request = urllib.request.Request(
            url,
            headers={"User-Agent": "proxytun-client/0.1"},
            method="GET",
        )
        try:
            with opener.open(request, timeout=timeout_s) as response:
                body = response.read(256).decode("utf-8", errors="replace").strip()
        except urllib.error.HTTPError as exc:
            logger.info("IP echo %s answered HTTP %s", url, exc.code)
            continue
        except (urllib.error.URLError, TimeoutError, OSError) as exc:
            logger.info("IP echo %s failed: %s", url, exc)
            continue
        try:
            return str(ipaddress.ip_address(body))
        except ValueError:
            logger.info("IP echo %s returned a non-address body", url)
    return None


class HealthMonitor:
    """Background ticker; never changes tunnel state itself."""

    def __init__(
        self,
        session: TunnelSession,
        *,
        backend: WindowsNetworkBackend,
        pid: int | None,
        settings: TunnelSettings | None = None,
        event_sink: EventSink | None = None,
        on_forwarder_lost: Callable[[], None] | None = None,
        fetch_ip: FetchIp = fetch_external_ip,
    ) -> None:
        self.session = session
        self.backend = backend
        self.pid = pid
        self.settings = settings or TunnelSettings()
        self.event_sink = event_sink
        self.on_forwarder_lost = on_forwarder_lost
        self.fetch_ip = fetch_ip
        self.is_healthy: bool | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="proxytun-health", daemon=True)
        self._thread.start()
        logger.info("Health monitor started (every %ss)", self.settings.health_interval_s)

    def stop(self, timeout_s: float = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout_s)
            if thread.is_alive():
                logger.warning("Health monitor did not stop within %ss", timeout_s)
        logger.info("Health monitor stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.check_once()
            except Exception:  # noqa: BLE001 - keep ticking
                logger.exception("Health check tick failed")
            if self._stop.wait(self.settings.health_interval_s):
                return

    def check_once(self) -> bool:
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="proxytun-health") as pool:
            alive_future = pool.submit(self._forwarder_alive)
            ip_future = pool.submit(self.fetch_ip, self.settings.ip_echo_urls, IP_FETCH_TIMEOUT_S)
            alive = alive_future.result()
            external_ip = ip_future.result()
        if self._stop.is_set():
            return bool(self.is_healthy)

        now = utc_now()
        healthy = alive and external_ip is not None
        previous = self.is_healthy
        previous_ip = self.session.external_ip
        self.session.last_health_check = now
        self.is_healthy = healthy

        if healthy != previous:
            if healthy:
                logger.info("Tunnel healthy, egress IP %s", external_ip)
            else:
                logger.warning(
                    "Tunnel unhealthy (forwarder alive=%s, egress IP=%s)", alive, external_ip
                )
            deliver(self.event_sink, HealthEvent(healthy, external_ip, now, previous))

        if healthy and external_ip is not None and external_ip != previous_ip:
            self.session.external_ip = external_ip
            if previous_ip is not None:
                logger.info("Egress IP changed: %s -> %s", previous_ip, external_ip)
            deliver(self.event_sink, ExternalIpChangedEvent(external_ip, previous_ip, now))

        if not alive and self.on_forwarder_lost is not None:
            self.on_forwarder_lost()
        return healthy

    def _forwarder_alive(self) -> bool:
        if self.pid is None:
            return False
        try:
            return self.backend.process_alive(self.pid)
        except (AppError, OSError) as exc:
            logger.warning("Forwarder liveness check failed: %s", exc)
            return False
