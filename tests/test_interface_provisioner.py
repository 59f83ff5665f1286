from __future__ import annotations

import itertools

import pytest

from conftest import command_error, fast_settings
from proxytun_client.core.errors import PrivilegeError, ProvisioningError
from proxytun_client.core.interface_provisioner import (
    InterfaceProvisioner,
    NativeAdapter,
    ScriptedAdapter,
    TunnelDriver,
    adapter_rank,
    is_physical,
    rank_candidates,
)
from proxytun_client.core.models import AdapterInfo, CreationMethod
from proxytun_client.core.operation import OperationContext

LOOPBACK = AdapterInfo("Ethernet 7", "Microsoft KM-TEST Loopback Adapter", 31, "Up")
OLD_LOOPBACK = AdapterInfo("Ethernet 5", "Microsoft KM-TEST Loopback Adapter", 18, "Up")
WINTUN = AdapterInfo("Local Area Connection", "WireGuard Wintun Userspace Tunnel", 40, "Up", True)
NAMED = AdapterInfo("vEthernet (ProxyTun)", "Hyper-V Virtual Ethernet Adapter", 25, "Up", True)
HYPERV = AdapterInfo("vEthernet (Default Switch)", "Hyper-V Virtual Ethernet Adapter", 26, "Up", True)
WIFI = AdapterInfo("Wi-Fi", "Intel(R) Wi-Fi 6 AX201 160MHz", 12, "Up")
REALTEK = AdapterInfo("Ethernet", "Realtek PCIe GbE Family Controller", 7, "Up")


def _provisioner(backend, **kwargs) -> InterfaceProvisioner:
    kwargs.setdefault("discovery_cap_s", 0.2)
    kwargs.setdefault("configure_backoff_s", 0.0)
    return InterfaceProvisioner(backend, fast_settings(), **kwargs)


def _ctx(timeout_s: float = 10.0) -> OperationContext:
    return OperationContext("provisioning", timeout_s)


def test_physical_adapters_are_recognised() -> None:
    assert is_physical(WIFI)
    assert is_physical(REALTEK)
    # "Ethernet 7" is named like a NIC but described as a loopback.
    assert not is_physical(LOOPBACK)
    assert not is_physical(WINTUN)


def test_rank_order() -> None:
    assert adapter_rank(NAMED, "ProxyTun") == 3
    assert adapter_rank(LOOPBACK, "ProxyTun") == 2
    assert adapter_rank(WINTUN, "ProxyTun") == 1
    assert adapter_rank(HYPERV, "ProxyTun") == 0
    assert adapter_rank(WIFI, "ProxyTun") == 0


def test_discovery_is_independent_of_table_order() -> None:
    adapters = [WIFI, REALTEK, HYPERV, WINTUN, LOOPBACK, OLD_LOOPBACK, NAMED]
    expected = [NAMED, LOOPBACK, OLD_LOOPBACK, WINTUN]
    for order in itertools.permutations(adapters):
        assert rank_candidates(list(order), "ProxyTun") == expected


def test_ties_break_on_name() -> None:
    first = AdapterInfo("Ethernet 8", "Microsoft KM-TEST Loopback Adapter", None, "Up")
    second = AdapterInfo("Ethernet 9", "Microsoft KM-TEST Loopback Adapter", None, "Up")
    assert rank_candidates([second, first], "ProxyTun") == [first, second]


def test_custom_classifier_excludes_adapters() -> None:
    ranked = rank_candidates([LOOPBACK, WINTUN], "ProxyTun", classifier=lambda a: a.name == "Ethernet 7")
    assert ranked == [WINTUN]


def test_native_adapter_is_first_choice(backend) -> None:
    record = _provisioner(backend).provision("ProxyTun", _ctx())

    assert record.creation_method is CreationMethod.NATIVE_ADAPTER
    assert record.resolved_name == "vEthernet (ProxyTun)"
    assert record.created is True
    assert backend.addresses["vEthernet (ProxyTun)"] == ("10.0.0.1", "255.255.255.0")
    assert "enable_adapter" in backend.op_names()


def test_existing_adapter_is_reused_not_created(backend) -> None:
    backend._add_adapter("ProxyTun", "Microsoft KM-TEST Loopback Adapter")

    record = _provisioner(backend).provision("ProxyTun", _ctx())

    assert record.creation_method is CreationMethod.REUSED
    assert record.created is False
    assert "create_native_adapter" not in backend.op_names()
    assert _provisioner(backend).destroy(record, _ctx()) is True
    assert "remove_adapter" not in backend.op_names()
    assert "ProxyTun" not in backend.addresses


def test_os_assigned_name_is_reported(backend) -> None:
    backend.fail["create_native_adapter"] = command_error("Hyper-V is not installed")
    backend.fail["create_scripted_adapter"] = command_error("netloop.inf not found")
    backend.fail["rename_adapter"] = command_error("The name is already in use")

    record = _provisioner(backend).provision("ProxyTun", _ctx())

    assert record.requested_name == "ProxyTun"
    assert record.resolved_name == "Ethernet 7"
    assert record.creation_method is CreationMethod.LOOPBACK_ADAPTER
    assert backend.addresses["Ethernet 7"] == ("10.0.0.1", "255.255.255.0")


def test_loopback_is_renamed_when_possible(backend) -> None:
    backend.fail["create_native_adapter"] = command_error("Hyper-V is not installed")
    backend.fail["create_scripted_adapter"] = command_error("netloop.inf not found")

    record = _provisioner(backend).provision("ProxyTun", _ctx())

    assert record.resolved_name == "ProxyTun"
    assert ("rename_adapter", "Ethernet 7->ProxyTun") in backend.ops


def test_tunnel_driver_defers_creation(backend) -> None:
    backend.driver_available = True
    provisioner = _provisioner(
        backend, strategies=lambda name: [TunnelDriver(backend, None)]
    )

    record = provisioner.provision("ProxyTun", _ctx())

    assert record.deferred is True
    assert record.creation_method is CreationMethod.TUNNEL_DRIVER
    assert record.index is None
    assert backend.ops == []

    backend._add_adapter("ProxyTun", "WireGuard Wintun Userspace Tunnel")
    final = provisioner.finalize(record, _ctx())
    assert final.deferred is False
    assert final.index is not None
    assert backend.addresses["ProxyTun"] == ("10.0.0.1", "255.255.255.0")
    assert provisioner.destroy(final, _ctx()) is True
    assert "remove_adapter" not in backend.op_names()


def test_unusable_adapter_is_removed_before_next_method(backend) -> None:
    backend.fail["set_adapter_address:vEthernet (ProxyTun)"] = command_error("The interface is not ready")
    provisioner = _provisioner(
        backend,
        strategies=lambda name: [NativeAdapter(backend, name), ScriptedAdapter(backend, name)],
    )

    record = provisioner.provision("ProxyTun", _ctx())

    assert record.creation_method is CreationMethod.SCRIPTED_ADAPTER
    assert ("remove_adapter", "vEthernet (ProxyTun)") in backend.ops
    assert [a.name for a in backend.adapters] == ["Wi-Fi", "Ethernet", "ProxyTun"]


def test_created_adapter_that_never_appears_is_removed(backend) -> None:
    backend.unqueryable = {"vEthernet (ProxyTun)"}
    provisioner = _provisioner(backend, strategies=lambda name: [NativeAdapter(backend, name)])

    with pytest.raises(ProvisioningError):
        provisioner.provision("ProxyTun", _ctx())

    assert ("remove_adapter", "vEthernet (ProxyTun)") in backend.ops
    assert [a.name for a in backend.adapters] == ["Wi-Fi", "Ethernet"]


def test_all_methods_failing(backend) -> None:
    for op in ("create_native_adapter", "create_scripted_adapter", "install_loopback_adapter"):
        backend.fail[op] = command_error("driver unavailable")
    provisioner = _provisioner(
        backend,
        strategies=lambda name: [
            NativeAdapter(backend, name),
            ScriptedAdapter(backend, name),
            TunnelDriver(backend, None),
        ],
    )

    with pytest.raises(ProvisioningError) as excinfo:
        provisioner.provision("ProxyTun", _ctx())

    message = str(excinfo.value)
    assert "native-adapter" in message and "tunnel-driver" in message
    assert excinfo.value.hint == "elevate"


def test_privilege_error_stops_immediately(backend) -> None:
    backend.fail["create_native_adapter"] = PrivilegeError("Access is denied.")

    with pytest.raises(PrivilegeError):
        _provisioner(backend).provision("ProxyTun", _ctx())

    assert "create_scripted_adapter" not in backend.op_names()


def test_discovery_skips_unqueryable_candidates(backend) -> None:
    backend._add_adapter("Ethernet 7", "Microsoft KM-TEST Loopback Adapter")
    backend._add_adapter("Ethernet 8", "Microsoft KM-TEST Loopback Adapter")
    backend.unqueryable.add("Ethernet 8")

    adapter = _provisioner(backend).discover("ProxyTun", _ctx())

    assert adapter.name == "Ethernet 7"


def test_discovery_gives_up_after_cap(backend) -> None:
    backend._add_adapter("Ethernet 7", "Microsoft KM-TEST Loopback Adapter")
    backend.unqueryable.add("Ethernet 7")

    with pytest.raises(ProvisioningError, match="Ethernet 7"):
        _provisioner(backend, discovery_cap_s=0.1).discover("ProxyTun", _ctx())


def test_destroy_reports_failures(backend) -> None:
    record = _provisioner(backend).provision("ProxyTun", _ctx())
    backend.fail["remove_adapter"] = command_error("pnputil /remove-device failed")

    assert _provisioner(backend).destroy(record, _ctx()) is False
