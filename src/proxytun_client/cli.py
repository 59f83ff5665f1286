"""Command-line entry point: `proxytun <command>`."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
import signal
import sys
import threading

from proxytun_client.core.diagnostics import collect_diagnostics
from proxytun_client.core.errors import AppError
from proxytun_client.core.events import ThreadedEventSink
from proxytun_client.core.logging_setup import setup_logging
from proxytun_client.core.models import (
    ConnectionEvent,
    ExternalIpChangedEvent,
    ForwarderCrashEvent,
    HealthEvent,
    LeakTestReport,
    ProgressEvent,
    ProxyEndpoint,
)
from proxytun_client.core.proxy_validator import ProxyValidator
from proxytun_client.core.settings import TunnelSettings, load_settings
from proxytun_client.core.supervisor import TunnelSupervisor
from proxytun_client.core.windows_net import WindowsNetworkBackend

logger = logging.getLogger(__name__)


def _print_event(event: object) -> None:
    if isinstance(event, ProgressEvent):
        print(f"[{event.progress_percent:3d}%] {event.message}")
    elif isinstance(event, ConnectionEvent):
        if event.connected:
            print(f"Connected (session {event.session_id})")
        else:
            print(f"Disconnected{': ' + event.error if event.error else ''}")
    elif isinstance(event, HealthEvent):
        print(f"Health: {'ok' if event.is_healthy else 'DEGRADED'} (egress IP {event.external_ip})")
    elif isinstance(event, ExternalIpChangedEvent):
        print(f"Egress IP is now {event.external_ip}")
    elif isinstance(event, ForwarderCrashEvent):
        print(f"Tunnel process exited (code {event.exit_code})")


def _print_leak_report(report: LeakTestReport) -> None:
    print(
        f"Leak test: {report.classification} "
        f"({report.tests_passed}/{report.total_tests} passed, {report.success_rate:g}%)"
    )
    for test in report.tests:
        print(f"  {test.status.value:5s} {test.name}: {test.details}")
    if report.has_leaks:
        print("  DNS LEAK DETECTED")
    for rec in report.recommendations:
        print(f"  [{rec.priority}] {rec.issue}: {rec.solution}")


def _cmd_validate(args: argparse.Namespace, settings: TunnelSettings) -> int:
    endpoint = ProxyEndpoint.from_url(args.proxy)
    report = ProxyValidator(settings).validate(endpoint, skip_http_check=not args.http_check)
    print(f"Proxy: {endpoint.display()}")
    print(f"  TCP reachable:   {report.tcp_reachable}")
    print(f"  Authenticated:   {report.authenticated}")
    print(f"  HTTP round trip: {report.http_round_trip_ok}")
    print(f"  UDP associate:   {report.udp_associate_supported}")
    print(f"  Latency:         {report.latency_ms} ms")
    for error in report.errors:
        print(f"  error: {error}")
    for warning in report.warnings:
        print(f"  warning: {warning}")
    return 0 if report.ok else 1


def _cmd_connect(args: argparse.Namespace, settings: TunnelSettings) -> int:
    endpoint = ProxyEndpoint.from_url(args.proxy)
    sink = ThreadedEventSink(_print_event)
    supervisor = TunnelSupervisor(settings, event_sink=sink)
    done = threading.Event()

    def _stop(signum, _frame) -> None:
        logger.info("Signal %s received", signum)
        done.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    try:
        supervisor.connect(endpoint)
        if args.leak_test:
            _print_leak_report(supervisor.run_leak_test())
        if args.leak_monitor:
            supervisor.start_leak_monitoring(args.leak_monitor)
        print("Press Ctrl+C to disconnect")
        while not done.wait(1.0):
            if not supervisor.connected:
                return 1
        return 0
    finally:
        supervisor.disconnect()
        sink.close()


def _cmd_leak_test(args: argparse.Namespace, settings: TunnelSettings) -> int:
    supervisor = TunnelSupervisor(settings)
    report = supervisor.run_leak_test()
    _print_leak_report(report)
    return 1 if report.has_leaks else 0


def _cmd_diagnostics(args: argparse.Namespace, settings: TunnelSettings) -> int:
    print(collect_diagnostics(settings=settings, backend=WindowsNetworkBackend()))
    return 0


def _cmd_cleanup(args: argparse.Namespace, settings: TunnelSettings) -> int:
    removed = TunnelSupervisor(settings).cleanup_stale_state()
    for item in removed:
        print(f"removed {item}")
    print(f"{len(removed)} stale item(s) removed")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="proxytun",
        description="Route all traffic through a SOCKS5 or HTTP proxy.",
    )
    parser.add_argument("--config", help="Path to settings.json (default: user config dir)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    validate = sub.add_parser("validate", help="Check that a proxy is usable")
    validate.add_argument("proxy", help="socks5://[user:pass@]host:port or http://host:port")
    validate.add_argument(
        "--http-check", action="store_true", help="Also fetch a page through the proxy"
    )
    validate.set_defaults(func=_cmd_validate)

    connect = sub.add_parser("connect", help="Start the tunnel and stay connected")
    connect.add_argument("proxy", help="socks5://[user:pass@]host:port or http://host:port")
    connect.add_argument("--leak-test", action="store_true", help="Run a leak test once connected")
    connect.add_argument(
        "--leak-monitor",
        type=float,
        metavar="SECONDS",
        help="Re-run the leak test periodically",
    )
    connect.set_defaults(func=_cmd_connect)

    leak = sub.add_parser("leak-test", help="Check the current DNS path for leaks")
    leak.set_defaults(func=_cmd_leak_test)

    diag = sub.add_parser("diagnostics", help="Print a diagnostics report")
    diag.set_defaults(func=_cmd_diagnostics)

    cleanup = sub.add_parser("cleanup", help="Remove rules and routes left by a crashed run")
    cleanup.set_defaults(func=_cmd_cleanup)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO, console=args.verbose)
    try:
        settings = load_settings(Path(args.config) if args.config else None)
        return args.func(args, settings)
    except AppError as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"Error: {exc.describe()}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
