from __future__ import annotations

from dataclasses import replace
import time

import pytest

from conftest import (
    FakeHealth,
    FakeValidator,
    command_error,
    fast_settings,
    good_report,
    unreachable_error,
)
from proxytun_client.core.errors import (
    ConfigurationError,
    DNSError,
    ForwarderError,
    PhaseTimeoutError,
    ProvisioningError,
    RoutingError,
    ValidationError,
)
from proxytun_client.core.interface_provisioner import NativeAdapter, ScriptedAdapter
from proxytun_client.core.models import (
    AddressFamily,
    ConnectionEvent,
    CreationMethod,
    ForwarderCrashEvent,
    LeakTestEvent,
    ProgressEvent,
    ProxyEndpoint,
    RoutePurpose,
    SessionState,
)
from proxytun_client.core.proxy_validator import ProxyValidator

ENDPOINT = ProxyEndpoint("203.0.113.9", 1080)
MUTATIONS = {
    "add_route",
    "delete_route",
    "set_dns_servers",
    "reset_dns",
    "add_firewall_block",
    "delete_firewall_rule",
}


def test_connect_then_disconnect_restores_original_state(backend, make_supervisor) -> None:
    before = backend.state()
    events: list = []
    supervisor = make_supervisor(events=events)

    session_id = supervisor.connect(ENDPOINT)

    session = supervisor.session
    assert session is not None and session.id == session_id
    assert supervisor.state is SessionState.CONNECTED
    assert session.iface is not None
    assert session.iface.resolved_name == "vEthernet (ProxyTun)"
    assert ("0.0.0.0", "0.0.0.0", "192.168.1.1") not in backend.routes
    assert ("0.0.0.0", "128.0.0.0", "10.0.0.2") in backend.routes
    assert ("128.0.0.0", "128.0.0.0", "10.0.0.2") in backend.routes
    assert ("203.0.113.9", "255.255.255.255", "192.168.1.1") in backend.routes
    assert set(backend.firewall) == {
        "ProxyTun-Block-DNS-Out",
        "ProxyTun-Block-DNS-TCP-Out",
        "ProxyTun-Block-DoT",
        "ProxyTun-Block-DoH-dns.google",
    }
    assert FakeHealth.instances[-1].started

    assert supervisor.disconnect() is True

    assert backend.state() == before
    assert supervisor.state is SessionState.IDLE
    assert supervisor.session is None
    assert FakeHealth.instances[-1].stopped
    progress = [event.progress_percent for event in events if isinstance(event, ProgressEvent)]
    assert progress[:7] == [0, 16, 33, 50, 75, 90, 100]
    connections = [event for event in events if isinstance(event, ConnectionEvent)]
    assert [event.connected for event in connections] == [True, False]


def test_protective_route_brackets_default_route_deletion(backend, make_supervisor) -> None:
    supervisor = make_supervisor()
    supervisor.connect(ENDPOINT)
    supervisor.disconnect()

    protective = "203.0.113.9/255.255.255.255"
    default = "0.0.0.0/0.0.0.0"
    ops = backend.ops
    add_protective = ops.index(("add_route", protective))
    delete_default = ops.index(("delete_route", default))
    restore_default = ops.index(("add_route", default))
    delete_protective = ops.index(("delete_route", protective))
    assert add_protective < delete_default < restore_default < delete_protective


def test_unreachable_proxy_never_touches_the_system(backend, make_supervisor) -> None:
    calls: list[str] = []
    supervisor = make_supervisor(validator=FakeValidator(error=unreachable_error()), calls=calls)

    with pytest.raises(ValidationError) as excinfo:
        supervisor.connect(ENDPOINT)

    assert excinfo.value.phase == "validating"
    assert excinfo.value.validation is not None
    assert excinfo.value.validation.tcp_reachable is False
    assert not MUTATIONS & set(backend.op_names())
    assert backend.ops == []
    assert calls == []
    assert supervisor.state is SessionState.IDLE


def test_scenario_unreachable_socks5_proxy_creates_no_adapter(
    backend, make_supervisor, monkeypatch
) -> None:
    settings = fast_settings(validation_timeout_s=2.0)

    def refuse(self, endpoint, ctx):  # noqa: ANN001
        raise OSError("timed out")

    monkeypatch.setattr(ProxyValidator, "_connect", refuse)
    supervisor = make_supervisor(settings, validator=ProxyValidator(settings))

    with pytest.raises(ValidationError) as excinfo:
        supervisor.connect(ProxyEndpoint("203.0.113.9", 1080))

    assert "Cannot reach the proxy server" in excinfo.value.user_message
    assert [a.name for a in backend.adapters] == ["Wi-Fi", "Ethernet"]
    assert backend.ops == []


def test_udp_unsupported_connects_in_tcp_only_mode(backend, make_supervisor) -> None:
    calls: list[str] = []
    supervisor = make_supervisor(validator=FakeValidator(good_report(udp=False)), calls=calls)

    supervisor.connect(ENDPOINT)

    session = supervisor.session
    assert session is not None
    assert session.tcp_only is True
    assert session.validation is not None
    assert session.validation.udp_associate_supported is False
    assert any("UDP ASSOCIATE" in warning for warning in session.warnings)
    assert supervisor._forwarder is not None
    assert supervisor._forwarder.launch.tcp_only is True
    supervisor.disconnect()


def test_connect_while_connected_disconnects_exactly_once(backend, make_supervisor) -> None:
    calls: list[str] = []
    supervisor = make_supervisor(calls=calls)

    first = supervisor.connect(ENDPOINT)
    second = supervisor.connect(ProxyEndpoint("203.0.113.10", 1080))

    assert first != second
    assert calls == ["start", "stop", "start"]
    assert supervisor.session is not None and supervisor.session.id == second
    assert backend.op_names().count("remove_adapter") == 1
    supervisor.disconnect()
    assert calls == ["start", "stop", "start", "stop"]


def test_disconnect_twice_is_a_noop(backend, make_supervisor) -> None:
    supervisor = make_supervisor()
    supervisor.connect(ENDPOINT)

    assert supervisor.disconnect() is True
    ops_after_first = list(backend.ops)
    assert supervisor.disconnect() is False
    assert backend.ops == ops_after_first
    assert backend.op_names().count("remove_adapter") == 1


def test_provisioning_failure_rolls_back(backend, make_supervisor) -> None:
    before = backend.state()
    backend.fail["set_adapter_address"] = command_error("The interface is not ready")
    supervisor = make_supervisor(
        strategies=lambda name: [NativeAdapter(backend, name), ScriptedAdapter(backend, name)]
    )

    with pytest.raises(ProvisioningError) as excinfo:
        supervisor.connect(ENDPOINT)

    assert excinfo.value.phase == "provisioning"
    assert backend.state() == before
    assert supervisor.state is SessionState.IDLE


def test_redirect_failure_rolls_back(backend, make_supervisor) -> None:
    before = backend.state()
    calls: list[str] = []
    backend.fail["add_route:128.0.0.0/128.0.0.0"] = command_error("The route addition failed")
    supervisor = make_supervisor(calls=calls)

    with pytest.raises(RoutingError) as excinfo:
        supervisor.connect(ENDPOINT)

    assert excinfo.value.phase == "redirecting"
    assert backend.state() == before
    assert calls == ["start", "stop"]
    assert supervisor.state is SessionState.IDLE


def test_dns_failure_rolls_back(backend, make_supervisor) -> None:
    before = backend.state()
    events: list = []
    backend.fail["add_firewall_block:ProxyTun-Block-DoT"] = command_error("Access to rule denied")
    supervisor = make_supervisor(events=events)

    with pytest.raises(DNSError) as excinfo:
        supervisor.connect(ENDPOINT)

    assert excinfo.value.phase == "securing_dns"
    assert backend.state() == before
    failed = [event for event in events if isinstance(event, ConnectionEvent)]
    assert failed[-1].connected is False
    assert "securing_dns" in (failed[-1].error or "")


def test_forwarder_start_failure_removes_adapter(backend, make_supervisor) -> None:
    before = backend.state()
    supervisor = make_supervisor(forwarder_fail=ForwarderError("tun2socks missing", hint="reinstall"))

    with pytest.raises(ForwarderError) as excinfo:
        supervisor.connect(ENDPOINT)

    assert excinfo.value.phase == "starting_forwarder"
    assert "remove_adapter" in backend.op_names()
    assert backend.state() == before


def test_hung_phase_times_out_within_budget(backend, make_supervisor) -> None:
    before = backend.state()
    backend.hang.add("set_dns_servers")
    supervisor = make_supervisor(fast_settings(dns_timeout_s=0.3))

    started = time.monotonic()
    with pytest.raises(PhaseTimeoutError) as excinfo:
        supervisor.connect(ENDPOINT)
    elapsed = time.monotonic() - started

    assert isinstance(excinfo.value, TimeoutError)
    assert excinfo.value.phase == "securing_dns"
    assert elapsed < 0.3 + 2.0
    assert backend.state() == before


def test_redirect_timeout_falls_back_to_simplified_routing(backend, make_supervisor) -> None:
    backend.hang.add("delete_route")
    supervisor = make_supervisor(fast_settings(routing_timeout_s=0.3))

    supervisor.connect(ENDPOINT)

    session = supervisor.session
    assert session is not None
    assert session.simplified is True
    assert supervisor.state is SessionState.CONNECTED
    assert ("0.0.0.0", "0.0.0.0", "192.168.1.1") in backend.routes
    assert ("0.0.0.0", "128.0.0.0", "10.0.0.2") in backend.routes
    dns_routes = {route.destination for route in session.routes_with(RoutePurpose.DNS)}
    assert dns_routes == {"8.8.8.8", "1.1.1.1"}
    assert backend.firewall == {}
    supervisor.disconnect()
    assert ("0.0.0.0", "128.0.0.0", "10.0.0.2") not in backend.routes


def test_resolved_adapter_name_is_used_by_later_phases(backend, make_supervisor) -> None:
    backend.fail["create_native_adapter"] = command_error("Hyper-V is not installed")
    backend.fail["create_scripted_adapter"] = command_error("netloop.inf not found")
    backend.fail["rename_adapter"] = command_error("The name is already in use")
    supervisor = make_supervisor()

    supervisor.connect(ENDPOINT)

    session = supervisor.session
    assert session is not None and session.iface is not None
    assert session.iface.requested_name == "ProxyTun"
    assert session.iface.resolved_name == "Ethernet 7"
    assert session.iface.creation_method is CreationMethod.LOOPBACK_ADAPTER
    assert supervisor._forwarder.launch.device == "Ethernet 7"
    assert backend.dns[("Ethernet 7", AddressFamily.IPV4)] == supervisor.settings.ipv4_dns
    assert backend.addresses["Ethernet 7"] == ("10.0.0.1", "255.255.255.0")
    supervisor.disconnect()
    assert "Ethernet 7" not in [adapter.name for adapter in backend.adapters]


def test_reused_adapter_gets_both_dns_families_back(backend, make_supervisor) -> None:
    backend._add_adapter("ProxyTun", "Microsoft KM-TEST Loopback Adapter")
    backend.dns[("ProxyTun", AddressFamily.IPV6)] = ("fd00::1",)
    before = backend.state()
    supervisor = make_supervisor()

    supervisor.connect(ENDPOINT)
    session = supervisor.session
    assert session is not None and session.iface is not None
    assert session.iface.creation_method is CreationMethod.REUSED
    assert backend.dns[("ProxyTun", AddressFamily.IPV6)] == supervisor.settings.dns_ipv6

    assert supervisor.disconnect() is True
    assert backend.state() == before
    assert backend.dns[("ProxyTun", AddressFamily.IPV6)] == ("fd00::1",)


def test_deferred_adapter_is_resolved_after_forwarder_start(backend, make_supervisor) -> None:
    before = backend.state()
    for op in ("create_native_adapter", "create_scripted_adapter", "install_loopback_adapter"):
        backend.fail[op] = command_error("driver unavailable")
    supervisor = make_supervisor()

    supervisor.connect(ENDPOINT)

    session = supervisor.session
    assert session is not None and session.iface is not None
    assert session.iface.creation_method is CreationMethod.VIRTUAL_FALLBACK
    assert session.iface.deferred is False
    assert session.iface.index is not None
    supervisor.disconnect()
    assert backend.state() == before


def test_leak_test_after_connect(backend, make_supervisor) -> None:
    events: list = []
    supervisor = make_supervisor(events=events)
    supervisor.connect(ENDPOINT)

    clean = supervisor.run_leak_test()
    assert clean.has_leaks is False
    assert clean.classification == "EXCELLENT"
    assert clean.egress_ip == "198.51.100.7"

    backend.system_resolver = "192.168.1.1"
    leaky = supervisor.run_leak_test()
    assert leaky.has_leaks is True
    assert leaky.classification == "FAIL"
    assert "192.168.1.1" in leaky.resolved_servers

    leak_events = [event for event in events if isinstance(event, LeakTestEvent)]
    assert [event.has_leaks for event in leak_events] == [False, True]
    supervisor.disconnect()


def test_forwarder_crash_forces_disconnect(backend, make_supervisor) -> None:
    before = backend.state()
    events: list = []
    supervisor = make_supervisor(events=events)
    supervisor.connect(ENDPOINT)

    supervisor._on_forwarder_exit(1, "panic: device closed")

    assert supervisor.state is SessionState.IDLE
    assert supervisor.session is None
    assert backend.state() == before
    crashes = [event for event in events if isinstance(event, ForwarderCrashEvent)]
    assert crashes == [ForwarderCrashEvent(1, "panic: device closed")]
    last = [event for event in events if isinstance(event, ConnectionEvent)][-1]
    assert last.connected is False and last.error


def test_forwarder_exit_outside_connected_is_ignored(make_supervisor) -> None:
    events: list = []
    supervisor = make_supervisor(events=events)
    supervisor._on_forwarder_exit(1, "late exit")
    assert events == []


def test_forwarder_exit_during_a_held_operation_is_left_to_it(backend, make_supervisor) -> None:
    supervisor = make_supervisor()
    supervisor.connect(ENDPOINT)

    with supervisor._op_lock:
        supervisor._on_forwarder_exit(1, "exited while stopping")
        assert supervisor.state is SessionState.CONNECTED

    assert supervisor.disconnect() is True
    assert supervisor.state is SessionState.IDLE


def test_teardown_failure_runs_emergency_restore(backend, make_supervisor) -> None:
    supervisor = make_supervisor()
    supervisor.connect(ENDPOINT)
    backend.fail["delete_firewall_rule:ProxyTun-Block-DoT"] = command_error("rule locked")

    assert supervisor.disconnect() is True

    assert ("0.0.0.0", "0.0.0.0", "192.168.1.1") in backend.routes
    assert ("0.0.0.0", "128.0.0.0", "10.0.0.2") not in backend.routes
    assert supervisor.state is SessionState.IDLE


def test_invalid_endpoint_fails_before_any_phase(backend, make_supervisor) -> None:
    validator = FakeValidator()
    supervisor = make_supervisor(validator=validator)
    with pytest.raises(ConfigurationError):
        supervisor.connect(ProxyEndpoint("203.0.113.9", 70000))
    assert validator.calls == 0
    assert backend.ops == []


def test_cleanup_stale_state_removes_leftovers(backend, make_supervisor, settings) -> None:
    supervisor = make_supervisor(settings)
    supervisor.connect(ENDPOINT)
    session = supervisor.session
    # Simulate a crash: forget the session without tearing anything down.
    supervisor.session = None
    supervisor.state = SessionState.IDLE
    assert session is not None and session.added_firewall_rules

    removed = supervisor.cleanup_stale_state()

    assert backend.firewall == {}
    assert not [route for route in backend.routes if route[2] == settings.tunnel_gateway]
    assert any(item.startswith("firewall ") for item in removed)
    assert any("128.0.0.0" in item for item in removed)


def test_cleanup_is_skipped_while_connected(make_supervisor) -> None:
    supervisor = make_supervisor()
    supervisor.connect(ENDPOINT)
    assert supervisor.cleanup_stale_state() == []
    supervisor.disconnect()


def test_leak_monitoring_emits_events(backend, make_supervisor) -> None:
    events: list = []
    supervisor = make_supervisor(events=events)
    supervisor.connect(ENDPOINT)

    supervisor.start_leak_monitoring(0.05)
    deadline = time.monotonic() + 2.0
    while time.monotonic() < deadline and not any(isinstance(e, LeakTestEvent) for e in events):
        time.sleep(0.02)
    supervisor.disconnect()

    assert any(isinstance(event, LeakTestEvent) for event in events)
    assert supervisor._leak_thread is None


def test_simplified_mode_does_not_carry_over_to_next_session(backend, make_supervisor) -> None:
    settings = replace(fast_settings(), routing_timeout_s=0.3)
    backend.hang.add("delete_route")
    supervisor = make_supervisor(settings)
    supervisor.connect(ENDPOINT)
    supervisor.connect(ENDPOINT)

    session = supervisor.session
    assert session is not None
    assert session.simplified is False
    assert len(backend.firewall) == 4
    supervisor.disconnect()
