"""Connect/disconnect state machine tying the tunnel components together.

Connect runs Validating -> Provisioning -> Starting forwarder -> Redirecting ->
Securing DNS -> Connected, each phase on its own deadline. Any failure or
timeout rolls back what the session recorded and returns to Idle.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable
import uuid

from proxytun_client.core.dns_guard import HOST_MASK, DnsLeakGuard
from proxytun_client.core.errors import (
    AppError,
    ForwarderCrashError,
    PhaseTimeoutError,
)
from proxytun_client.core.events import EventSink, deliver
from proxytun_client.core.forwarder import (
    ForwarderLaunch,
    ForwarderProcess,
    default_forwarder_factory,
)
from proxytun_client.core.health import HealthMonitor
from proxytun_client.core.interface_provisioner import InterfaceProvisioner
from proxytun_client.core.models import (
    ConnectionEvent,
    ForwarderCrashEvent,
    LeakTestEvent,
    LeakTestReport,
    ProgressEvent,
    ProxyEndpoint,
    RouteEntry,
    SessionState,
    TunnelSession,
)
from proxytun_client.core.operation import OperationContext
from proxytun_client.core.privileges import require_elevation
from proxytun_client.core.proxy_validator import ProxyValidator
from proxytun_client.core.routing import HALF_ROUTES, RoutingController
from proxytun_client.core.settings import TunnelSettings
from proxytun_client.core.windows_net import WindowsNetworkBackend

logger = logging.getLogger(__name__)

ForwarderFactory = Callable[[str | None], ForwarderProcess]
HealthFactory = Callable[..., HealthMonitor]

LEAK_MONITOR_INTERVAL_S = 300.0


class TunnelSupervisor:
    """Owns the single active TunnelSession and the forwarding process."""

    def __init__(
        self,
        settings: TunnelSettings | None = None,
        *,
        backend: WindowsNetworkBackend | None = None,
        validator: ProxyValidator | None = None,
        provisioner: InterfaceProvisioner | None = None,
        dns_guard: DnsLeakGuard | None = None,
        routing: RoutingController | None = None,
        forwarder_factory: ForwarderFactory = default_forwarder_factory,
        event_sink: EventSink | None = None,
        privilege_check: Callable[[], None] = require_elevation,
        health_factory: HealthFactory = HealthMonitor,
    ) -> None:
        self.settings = settings or TunnelSettings()
        self.backend = backend or WindowsNetworkBackend()
        self.validator = validator or ProxyValidator(self.settings)
        self.provisioner = provisioner or InterfaceProvisioner(self.backend, self.settings)
        self.dns_guard = dns_guard or DnsLeakGuard(self.backend, self.settings)
        self.routing = routing or RoutingController(self.backend, self.dns_guard, self.settings)
        self.forwarder_factory = forwarder_factory
        self.event_sink = event_sink
        self.privilege_check = privilege_check
        self.health_factory = health_factory

        self.session: TunnelSession | None = None
        self.state = SessionState.IDLE
        self._forwarder: ForwarderProcess | None = None
        self._health: HealthMonitor | None = None
        self._op_lock = threading.Lock()
        self._cancel = threading.Event()
        self._leak_stop = threading.Event()
        self._leak_thread: threading.Thread | None = None

    @property
    def connected(self) -> bool:
        return self.state is SessionState.CONNECTED

    # Connect

    def connect(self, endpoint: ProxyEndpoint) -> str:
        """Bring the tunnel up and return the new session id."""
        try:
            endpoint.validate()
        except AppError as exc:
            exc.phase = SessionState.VALIDATING.value
            raise

        with self._op_lock:
            if self.session is not None:
                logger.info("Session %s is active; disconnecting it first", self.session.id)
                self._disconnect_locked()

            self._cancel = threading.Event()
            session = TunnelSession(id=uuid.uuid4().hex[:12], endpoint=endpoint)
            self.session = session
            logger.info("Connecting session %s to %s", session.id, endpoint.display())
            try:
                self._establish(session)
            except Exception as exc:
                self._fail(session, exc)
                raise
            return session.id

    def _establish(self, session: TunnelSession) -> None:
        settings = self.settings
        endpoint = session.endpoint

        self._enter(session, SessionState.VALIDATING, "Validating proxy server", 0)
        backoff = sum(
            settings.validation_backoff_scale_s * 2**attempt
            for attempt in range(1, settings.validation_attempts)
        )
        ctx = self._phase_ctx(
            settings.validation_timeout_s * settings.validation_attempts + backoff
        )
        report = self.validator.validate_with_retry(endpoint, ctx)
        session.validation = report
        session.tcp_only = not report.udp_associate_supported
        session.warnings.extend(report.warnings)
        if session.tcp_only:
            logger.info("Session %s runs in TCP-only mode", session.id)

        if settings.require_elevation:
            self.privilege_check()

        self._enter(session, SessionState.PROVISIONING, "Creating virtual network adapter", 16)
        ctx = self._phase_ctx(settings.provisioning_timeout_s)
        session.iface = self.provisioner.provision(settings.interface_name, ctx)

        self._enter(session, SessionState.STARTING_FORWARDER, "Starting tunnel process", 33)
        ctx = self._phase_ctx(settings.forwarder_timeout_s)
        forwarder = self.forwarder_factory(settings.forwarder_path)
        forwarder.on_exit = self._on_forwarder_exit
        self._forwarder = forwarder
        forwarder.start(
            ForwarderLaunch(
                device=session.iface.resolved_name,
                endpoint=endpoint,
                mtu=settings.mtu,
                tcp_only=session.tcp_only,
            ),
            ctx,
        )
        if session.iface.deferred:
            session.iface = self.provisioner.finalize(session.iface, ctx)

        self._enter(session, SessionState.REDIRECTING, "Redirecting traffic", 50)
        try:
            self.routing.redirect(session, self._phase_ctx(settings.routing_timeout_s))
        except PhaseTimeoutError as exc:
            logger.warning("Full redirect timed out (%s); trying simplified routing", exc)
            self._progress(SessionState.REDIRECTING, "Retrying with simplified routing", 50)
            self.routing.simplified_redirect(
                session, self._phase_ctx(settings.simplified_routing_timeout_s)
            )

        self._enter(session, SessionState.SECURING_DNS, "Securing DNS", 75)
        self.dns_guard.secure(
            session,
            session.iface,
            self._phase_ctx(settings.dns_timeout_s),
            harden=not session.simplified,
        )

        self._progress(SessionState.SECURING_DNS, "Verifying routes", 90)
        try:
            status = self.routing.verify(session)
        except AppError as exc:
            session.warn(f"Route verification failed: {exc}")
        else:
            if not status.ok:
                session.warn("Route table does not show every tunnel route")

        self._set_state(session, SessionState.CONNECTED)
        self._health = self.health_factory(
            session,
            backend=self.backend,
            pid=forwarder.pid,
            settings=settings,
            event_sink=self.event_sink,
            on_forwarder_lost=self._on_forwarder_lost,
        )
        self._health.start()
        self._progress(SessionState.CONNECTED, "Connected", 100)
        for warning in session.warnings:
            logger.warning("Session %s: %s", session.id, warning)
        logger.info(
            "Session %s connected via %s%s",
            session.id,
            session.iface.resolved_name,
            " (simplified)" if session.simplified else "",
        )
        deliver(self.event_sink, ConnectionEvent(True, session.endpoint, session.id))

    def _fail(self, session: TunnelSession, exc: BaseException) -> None:
        phase = session.state.value
        if isinstance(exc, AppError):
            if exc.phase is None:
                exc.phase = phase
            if exc.validation is None:
                exc.validation = session.validation
            logger.error("Connect failed during %s: %s", phase, exc)
        else:
            logger.exception("Unexpected error during %s", phase)
        self._set_state(session, SessionState.ERROR)
        self._teardown(session)
        self.session = None
        self._set_state(session, SessionState.IDLE)
        message = exc.describe() if isinstance(exc, AppError) else str(exc)
        deliver(self.event_sink, ConnectionEvent(False, session.endpoint, session.id, message))

    # Disconnect

    def disconnect(self) -> bool:
        """Tear the tunnel down; False when there was nothing to disconnect."""
        with self._op_lock:
            if self.session is None:
                logger.info("Disconnect requested but not connected")
                return False
            self._disconnect_locked()
            return True

    def _disconnect_locked(self, error: str | None = None) -> None:
        session = self.session
        if session is None:
            return
        self._set_state(session, SessionState.DISCONNECTING)
        self._progress(SessionState.DISCONNECTING, "Disconnecting", 0)
        clean = self._teardown(session)
        self.session = None
        self._set_state(session, SessionState.IDLE)
        logger.info("Session %s disconnected (%s)", session.id, "clean" if clean else "with errors")
        deliver(self.event_sink, ConnectionEvent(False, session.endpoint, session.id, error))

    def _teardown(self, session: TunnelSession) -> bool:
        """Undo everything the session recorded; every step runs even if one fails."""
        ok = True
        self.stop_leak_monitoring()

        health, self._health = self._health, None
        if health is not None:
            health.stop()

        forwarder, self._forwarder = self._forwarder, None
        if forwarder is not None:
            try:
                forwarder.stop()
            except (AppError, OSError) as exc:
                logger.warning("Failed to stop forwarder: %s", exc)
                ok = False

        try:
            self.routing.restore(session, self._teardown_ctx("restoring routes"))
        except AppError as exc:
            logger.warning("Route restore failed: %s", exc)
            ok = False

        try:
            self.dns_guard.release(session, self._teardown_ctx("releasing DNS"))
        except AppError as exc:
            logger.warning("DNS release failed: %s", exc)
            ok = False

        if session.iface is not None:
            try:
                if not self.provisioner.destroy(session.iface, self._teardown_ctx("removing adapter")):
                    ok = False
            except AppError as exc:
                logger.warning("Adapter removal failed: %s", exc)
                ok = False

        if not ok:
            logger.warning("Teardown incomplete; running emergency restore")
            self.routing.emergency_restore(session)
        return ok

    def cancel(self) -> None:
        """Abort an in-flight connect; its rollback still runs."""
        logger.info("Cancelling current operation")
        self._cancel.set()

    # Asynchronous loss of the forwarder

    def _on_forwarder_exit(self, exit_code: int | None, detail: str) -> None:
        self._forced_disconnect(ForwarderCrashError(exit_code, detail))

    def _on_forwarder_lost(self) -> None:
        self._forced_disconnect(ForwarderCrashError(None, "forwarder process not found"))

    def _forced_disconnect(self, error: ForwarderCrashError) -> None:
        # A connect or disconnect in progress already owns the teardown.
        if not self._op_lock.acquire(blocking=False):
            return
        try:
            if self.state is not SessionState.CONNECTED:
                return
            logger.error("%s", error)
            deliver(self.event_sink, ForwarderCrashEvent(error.exit_code, error.detail))
            self._disconnect_locked(error=error.user_message)
        finally:
            self._op_lock.release()

    # Maintenance

    def cleanup_stale_state(self) -> list[str]:
        """Remove firewall rules and tunnel routes left behind by a crashed run."""
        with self._op_lock:
            if self.session is not None:
                logger.info("Skipping stale-state cleanup while a session is active")
                return []
            ctx = self._teardown_ctx("cleaning up")
            removed = [f"firewall {name}" for name in self.dns_guard.purge_stale_rules(ctx)]
            gateway = self.settings.tunnel_gateway
            stale = [RouteEntry(server, HOST_MASK, gateway) for server in self.settings.dns_route_servers]
            stale += [RouteEntry(dest, mask, gateway) for dest, mask in HALF_ROUTES]
            for route in stale:
                try:
                    if not self.backend.has_route(route, ctx):
                        continue
                    self.backend.delete_route(route, ctx)
                except AppError as exc:
                    logger.warning("Could not remove stale route %s: %s", route.describe(), exc)
                    continue
                removed.append(f"route {route.describe()}")
            logger.info("Stale-state cleanup removed %s item(s)", len(removed))
            return removed

    def run_leak_test(self) -> LeakTestReport:
        report = self.dns_guard.run_leak_test(self.session)
        deliver(self.event_sink, LeakTestEvent(report.has_leaks, report))
        return report

    def start_leak_monitoring(self, interval_s: float = LEAK_MONITOR_INTERVAL_S) -> None:
        if self._leak_thread is not None:
            return
        self._leak_stop.clear()
        self._leak_thread = threading.Thread(
            target=self._leak_loop, args=(interval_s,), name="proxytun-leak-monitor", daemon=True
        )
        self._leak_thread.start()
        logger.info("Leak monitoring every %ss", interval_s)

    def stop_leak_monitoring(self) -> None:
        self._leak_stop.set()
        thread, self._leak_thread = self._leak_thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0)

    def _leak_loop(self, interval_s: float) -> None:
        while not self._leak_stop.wait(interval_s):
            if not self.connected:
                continue
            report = self.run_leak_test()
            if report.has_leaks:
                logger.warning("Periodic leak test found leaks (%s)", report.classification)

    # Helpers

    def _phase_ctx(self, timeout_s: float) -> OperationContext:
        phase = self.session.state.value if self.session is not None else "connecting"
        return OperationContext(phase, timeout_s, cancel_event=self._cancel)

    def _teardown_ctx(self, phase: str) -> OperationContext:
        return OperationContext(phase, self.settings.teardown_timeout_s)

    def _set_state(self, session: TunnelSession, state: SessionState) -> None:
        logger.debug("Session %s: %s -> %s", session.id, session.state.value, state.value)
        session.state = state
        self.state = state

    def _enter(self, session: TunnelSession, state: SessionState, message: str, percent: int) -> None:
        self._cancel_check(state)
        self._set_state(session, state)
        self._progress(state, message, percent)

    def _cancel_check(self, state: SessionState) -> None:
        OperationContext(state.value, None, cancel_event=self._cancel).check()

    def _progress(self, state: SessionState, message: str, percent: int) -> None:
        logger.info("[%s%%] %s", percent, message)
        deliver(self.event_sink, ProgressEvent(state.value, message, percent))
