"""Create or discover the virtual adapter the forwarding process binds to.

Adapter creation on Windows is unreliable: drivers may be missing, need
elevation, or come up under a name the OS picked. Creation methods are tried
in order, each with its own budget, and a bounded discovery pass then finds
the adapter that actually appeared.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import time
from typing import Callable, Final, Protocol, Sequence

from proxytun_client.core.errors import AppError, PhaseTimeoutError, PrivilegeError, ProvisioningError
from proxytun_client.core.models import AdapterInfo, CreationMethod, InterfaceRecord
from proxytun_client.core.operation import OperationContext, run_with_retry
from proxytun_client.core.settings import TunnelSettings
from proxytun_client.core.windows_net import WindowsNetworkBackend

logger = logging.getLogger(__name__)

DISCOVERY_POLL_S: Final[float] = 0.2
DISCOVERY_CAP_S: Final[float] = 3.0
CONFIGURE_ATTEMPTS: Final[int] = 3
CONFIGURE_BACKOFF_S: Final[float] = 0.5

_PHYSICAL_HINTS: Final[tuple[str, ...]] = (
    "wi-fi",
    "wifi",
    "wireless",
    "wlan",
    "802.11",
    "bluetooth",
    "ethernet",
    "gigabit",
    "gbe",
    "realtek",
    "intel(r)",
    "broadcom",
    "qualcomm",
    "killer",
    "marvell",
    "mediatek",
)
_LOOPBACK_HINTS: Final[tuple[str, ...]] = ("loopback", "km-test")
_TUNNEL_HINTS: Final[tuple[str, ...]] = ("wintun", "tap-windows", "tun2socks", "virtual adapter")
# Virtual adapters owned by other software; never ours unless product-named.
_FOREIGN_VIRTUAL_HINTS: Final[tuple[str, ...]] = ("hyper-v", "vmware", "virtualbox", "docker", "wsl")

PhysicalClassifier = Callable[[AdapterInfo], bool]


def is_physical(adapter: AdapterInfo) -> bool:
    """Description heuristics for real NICs; a loopback or tunnel driver wins over the name."""
    description = adapter.description.lower()
    if any(hint in description for hint in _LOOPBACK_HINTS + _TUNNEL_HINTS):
        return False
    if adapter.virtual:
        return False
    text = f"{adapter.name.lower()} {description}"
    return any(hint in text for hint in _PHYSICAL_HINTS)


def adapter_rank(adapter: AdapterInfo, requested_name: str) -> int:
    """3 = product-named, 2 = loopback-described, 1 = generic virtual, 0 = not a candidate."""
    name = adapter.name.lower()
    description = adapter.description.lower()
    if requested_name.lower() in name:
        return 3
    if any(hint in description for hint in _FOREIGN_VIRTUAL_HINTS):
        return 0
    if any(hint in description for hint in _LOOPBACK_HINTS):
        return 2
    if adapter.virtual or any(hint in description for hint in _TUNNEL_HINTS):
        return 1
    return 0


def rank_candidates(
    adapters: Sequence[AdapterInfo],
    requested_name: str,
    classifier: PhysicalClassifier = is_physical,
) -> list[AdapterInfo]:
    """Deterministic ordering: rank, then newest interface index, then name."""
    candidates = []
    for adapter in adapters:
        rank = adapter_rank(adapter, requested_name)
        if rank == 0:
            continue
        if rank < 3 and classifier(adapter):
            continue
        candidates.append((rank, adapter))
    candidates.sort(key=lambda item: (-item[0], -(item[1].index or 0), item[1].name.lower()))
    return [adapter for _rank, adapter in candidates]


@dataclass(frozen=True, slots=True)
class StrategyOutcome:
    created: bool
    deferred: bool = False
    # Name the new adapter is expected to carry, when the strategy knows it.
    adapter_name: str | None = None


class CreationStrategy(Protocol):
    method: CreationMethod
    timeout_s: float

    def attempt(self, ctx: OperationContext) -> StrategyOutcome: ...


class ReuseExisting:
    method = CreationMethod.REUSED
    timeout_s = 10.0

    def __init__(self, backend: WindowsNetworkBackend, name: str) -> None:
        self.backend = backend
        self.name = name

    def attempt(self, ctx: OperationContext) -> StrategyOutcome:
        wanted = {self.name.lower(), f"vethernet ({self.name.lower()})"}
        for adapter in self.backend.list_adapters(ctx):
            if adapter.name.lower() in wanted:
                logger.info("Reusing existing adapter %s", adapter.name)
                return StrategyOutcome(created=False)
        raise ProvisioningError(f"No existing adapter named {self.name}")


class NativeAdapter:
    method = CreationMethod.NATIVE_ADAPTER
    timeout_s = 15.0

    def __init__(self, backend: WindowsNetworkBackend, name: str) -> None:
        self.backend = backend
        self.name = name

    def attempt(self, ctx: OperationContext) -> StrategyOutcome:
        self.backend.create_native_adapter(self.name, ctx)
        return StrategyOutcome(created=True, adapter_name=f"vEthernet ({self.name})")


class ScriptedAdapter:
    method = CreationMethod.SCRIPTED_ADAPTER
    timeout_s = 20.0

    def __init__(self, backend: WindowsNetworkBackend, name: str) -> None:
        self.backend = backend
        self.name = name

    def attempt(self, ctx: OperationContext) -> StrategyOutcome:
        self.backend.create_scripted_adapter(self.name, ctx)
        return StrategyOutcome(created=True, adapter_name=self.name)


class LoopbackAdapter:
    method = CreationMethod.LOOPBACK_ADAPTER
    timeout_s = 30.0

    def __init__(self, backend: WindowsNetworkBackend, name: str) -> None:
        self.backend = backend
        self.name = name

    def attempt(self, ctx: OperationContext) -> StrategyOutcome:
        before = {adapter.name for adapter in self.backend.list_adapters(ctx)}
        self.backend.install_loopback_adapter(ctx)
        fresh = [
            adapter
            for adapter in self.backend.list_adapters(ctx)
            if adapter.name not in before
            and any(hint in adapter.description.lower() for hint in _LOOPBACK_HINTS)
        ]
        if not fresh:
            return StrategyOutcome(created=True)
        adapter = fresh[0]
        if adapter.name == self.name:
            return StrategyOutcome(created=True, adapter_name=adapter.name)
        try:
            self.backend.rename_adapter(adapter.name, self.name, ctx)
        except (PhaseTimeoutError, PrivilegeError):
            raise
        except AppError as exc:
            # The OS-assigned name is kept; discovery will pick it up.
            logger.info("Keeping OS-assigned adapter name %s: %s", adapter.name, exc)
            return StrategyOutcome(created=True, adapter_name=adapter.name)
        return StrategyOutcome(created=True, adapter_name=self.name)


class TunnelDriver:
    """The forwarding process creates a driver-backed adapter when it starts."""

    method = CreationMethod.TUNNEL_DRIVER
    timeout_s = 5.0

    def __init__(self, backend: WindowsNetworkBackend, forwarder_path: str | None) -> None:
        self.backend = backend
        self.forwarder_path = forwarder_path

    def attempt(self, ctx: OperationContext) -> StrategyOutcome:
        if not self.backend.tunnel_driver_available(self.forwarder_path):
            raise ProvisioningError("Tunnel driver library not found")
        return StrategyOutcome(created=False, deferred=True)


class VirtualFallback:
    """Record the expected name only; adapter creation is left to the forwarding process."""

    method = CreationMethod.VIRTUAL_FALLBACK
    timeout_s = 1.0

    def attempt(self, ctx: OperationContext) -> StrategyOutcome:
        return StrategyOutcome(created=False, deferred=True)


class InterfaceProvisioner:
    def __init__(
        self,
        backend: WindowsNetworkBackend,
        settings: TunnelSettings | None = None,
        *,
        classifier: PhysicalClassifier = is_physical,
        strategies: Callable[[str], list[CreationStrategy]] | None = None,
        discovery_cap_s: float = DISCOVERY_CAP_S,
        configure_backoff_s: float = CONFIGURE_BACKOFF_S,
    ) -> None:
        self.backend = backend
        self.settings = settings or TunnelSettings()
        self.classifier = classifier
        self._strategies = strategies or self.default_strategies
        self.discovery_cap_s = discovery_cap_s
        self.configure_backoff_s = configure_backoff_s

    def default_strategies(self, name: str) -> list[CreationStrategy]:
        return [
            ReuseExisting(self.backend, name),
            NativeAdapter(self.backend, name),
            ScriptedAdapter(self.backend, name),
            LoopbackAdapter(self.backend, name),
            TunnelDriver(self.backend, self.settings.forwarder_path),
            VirtualFallback(),
        ]

    def provision(self, requested_name: str, ctx: OperationContext) -> InterfaceRecord:
        failures: list[str] = []
        for strategy in self._strategies(requested_name):
            ctx.check()
            method = strategy.method
            attempt_ctx = ctx.child(strategy.timeout_s, phase=f"provisioning ({method.value})")
            logger.info("Trying adapter creation method: %s", method.value)
            try:
                outcome = strategy.attempt(attempt_ctx)
            except PhaseTimeoutError as exc:
                ctx.check()
                logger.warning("Adapter method %s timed out", method.value)
                failures.append(f"{method.value}: {exc}")
                continue
            except PrivilegeError:
                raise
            except AppError as exc:
                logger.warning("Adapter method %s failed: %s", method.value, exc)
                failures.append(f"{method.value}: {exc}")
                continue

            if outcome.deferred:
                logger.info("Adapter creation deferred to the forwarder (%s)", method.value)
                return self._record(
                    requested_name, requested_name, None, method, deferred=True, created=False
                )

            record: InterfaceRecord | None = None
            try:
                adapter = self.discover(requested_name, ctx)
                record = self._record(
                    requested_name, adapter.name, adapter.index, method, created=outcome.created
                )
                self.configure(record, ctx)
            except (PhaseTimeoutError, PrivilegeError):
                self._undo(requested_name, method, record, outcome)
                raise
            except AppError as exc:
                logger.warning("Adapter from %s could not be used: %s", method.value, exc)
                failures.append(f"{method.value}: {exc}")
                self._undo(requested_name, method, record, outcome)
                continue

            if record.resolved_name != requested_name:
                logger.info(
                    "Adapter resolved as %r (requested %r)", record.resolved_name, requested_name
                )
            return record

        raise ProvisioningError(
            "All interface creation methods failed: " + "; ".join(failures),
            user_message="Could not create the virtual network adapter.",
            hint="elevate",
        )

    def finalize(self, record: InterfaceRecord, ctx: OperationContext) -> InterfaceRecord:
        """Resolve and address an adapter that the forwarding process created."""
        if not record.deferred:
            return record
        adapter = self.discover(record.requested_name, ctx)
        resolved = replace(record, resolved_name=adapter.name, index=adapter.index, deferred=False)
        self.configure(resolved, ctx)
        return resolved

    def discover(self, requested_name: str, ctx: OperationContext) -> AdapterInfo:
        """Poll the adapter table until a queryable candidate shows up or the cap is hit."""
        deadline = time.monotonic() + self.discovery_cap_s
        seen: list[str] = []
        while True:
            ctx.check()
            adapters = self.backend.list_adapters(ctx)
            for candidate in rank_candidates(adapters, requested_name, self.classifier):
                if self.backend.adapter_queryable(candidate.name, ctx):
                    logger.info(
                        "Discovered adapter %s (index=%s, %s)",
                        candidate.name,
                        candidate.index,
                        candidate.description or "no description",
                    )
                    return candidate
                if candidate.name not in seen:
                    seen.append(candidate.name)
            if time.monotonic() >= deadline:
                break
            ctx.sleep(DISCOVERY_POLL_S)
        raise ProvisioningError(
            f"No usable adapter found for {requested_name!r} (unqueryable: {seen or 'none'})",
            user_message="The virtual network adapter did not appear.",
        )

    def configure(self, record: InterfaceRecord, ctx: OperationContext) -> None:
        name = record.resolved_name
        run_with_retry(
            lambda: self.backend.set_adapter_address(
                name, record.local_address, record.subnet_mask, ctx
            ),
            ctx=ctx,
            attempts=CONFIGURE_ATTEMPTS,
            delay_s=self.configure_backoff_s,
            description=f"Address assignment on {name}",
        )
        run_with_retry(
            lambda: self.backend.enable_adapter(name, ctx),
            ctx=ctx,
            attempts=CONFIGURE_ATTEMPTS,
            delay_s=self.configure_backoff_s,
            description=f"Enabling {name}",
        )

    def destroy(self, record: InterfaceRecord, ctx: OperationContext) -> bool:
        """Best-effort teardown; returns False if any step failed."""
        if record.deferred or record.creation_method in {
            CreationMethod.TUNNEL_DRIVER,
            CreationMethod.VIRTUAL_FALLBACK,
        }:
            logger.info("Adapter %s is owned by the forwarder; nothing to remove", record.resolved_name)
            return True
        if not record.created:
            try:
                self.backend.reset_adapter_address(record.resolved_name, ctx)
            except AppError as exc:
                logger.warning("Failed to reset address on %s: %s", record.resolved_name, exc)
                return False
            return True

        ok = True
        try:
            self.backend.disable_adapter(record.resolved_name, ctx)
        except AppError as exc:
            logger.warning("Failed to disable adapter %s: %s", record.resolved_name, exc)
            ok = False
        try:
            self.backend.remove_adapter(record.resolved_name, record.creation_method, ctx)
        except AppError as exc:
            logger.warning("Failed to remove adapter %s: %s", record.resolved_name, exc)
            ok = False
        return ok

    def _record(
        self,
        requested: str,
        resolved: str,
        index: int | None,
        method: CreationMethod,
        *,
        deferred: bool = False,
        created: bool = True,
    ) -> InterfaceRecord:
        return InterfaceRecord(
            requested_name=requested,
            resolved_name=resolved,
            index=index,
            creation_method=method,
            gateway_address=self.settings.tunnel_gateway,
            local_address=self.settings.tunnel_local_address,
            subnet_mask=self.settings.tunnel_subnet_mask,
            deferred=deferred,
            created=created,
        )

    def _undo(
        self,
        requested_name: str,
        method: CreationMethod,
        record: InterfaceRecord | None,
        outcome: StrategyOutcome,
    ) -> None:
        """Remove an adapter this attempt created but could not use.

        Discovery may fail before a record exists, or may settle on a
        different adapter; the name the strategy created wins in both cases.
        """
        if not outcome.created:
            return
        name = outcome.adapter_name or (record.resolved_name if record else None)
        if name is None:
            logger.warning("Adapter created by %s could not be located for removal", method.value)
            return
        target = self._record(requested_name, name, None, method, created=True)
        self.destroy(target, OperationContext("provisioning cleanup", 20.0))
