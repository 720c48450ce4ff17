"""Firecracker micro-VM driver.

Architecture:
- VmManager is the explicit driver context: it owns the settings and the
  in-memory registry, and is passed to callers instead of living in a global
- Every VM operation runs under that VM's registry lock
- FirecrackerVM implements the lifecycle; this module adds lookup,
  define/undefine, info and console plumbing on top

Usage:
    async with VmManager(Settings()) as manager:
        await manager.define_vm(definition)
        await manager.create_vm("vm1")
        state, reason = await manager.get_state("vm1")
        await manager.destroy_vm("vm1", graceful=True)
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from fcvirt._logging import get_logger
from fcvirt.exceptions import (
    ConsoleNotAvailableError,
    ControlPlaneError,
    InvalidStateError,
)
from fcvirt.firecracker_vm import FirecrackerVM, MonitorFactory, Spawner
from fcvirt.models import DomainDefinition, DomainInfo
from fcvirt.registry import VmRegistry
from fcvirt.settings import Settings
from fcvirt.system_probes import check_firecracker_version, check_kvm_available
from fcvirt.vm_types import StateReason, VmState

if TYPE_CHECKING:
    from uuid import UUID

logger = get_logger(__name__)


class VmManager:
    """Firecracker driver context.

    Usage:
        async with VmManager(settings) as manager:
            vm = await manager.define_vm(definition)
            await manager.create_vm(vm.name)
            await manager.shutdown_vm(vm.name)
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        monitor_factory: MonitorFactory | None = None,
        spawner: Spawner | None = None,
    ) -> None:
        """Initialize the driver (sync part only).

        Args:
            settings: Driver configuration (defaults from FCVIRT_* environment)
            monitor_factory: Override control-plane client construction (tests)
            spawner: Override hypervisor spawning (tests)

        Note: Call `await start()` (or use `async with`) before creating VMs.
        The registry is in-memory only; VMs don't survive the process.
        """
        self.settings = settings or Settings()
        self.registry = VmRegistry()
        self._monitor_factory = monitor_factory
        self._spawner = spawner
        self._initialized = False

    async def start(self) -> None:
        """Run host probes once.

        Verifies the configured hypervisor binary (when one is configured and
        version checking is on) and warns when KVM is unusable.

        Raises:
            VmDependencyError: Configured binary missing or too old
        """
        if self._initialized:
            return

        kvm = await check_kvm_available()
        version = None
        if self.settings.check_version and self.settings.firecracker_bin is not None:
            version = await check_firecracker_version(self.settings.firecracker_bin)

        self._initialized = True
        logger.info(
            "Firecracker driver initialized",
            extra={
                "state_dir": str(self.settings.state_dir),
                "kvm_available": kvm,
                "firecracker_version": ".".join(map(str, version)) if version else None,
            },
        )

    async def stop(self) -> None:
        """Force-destroy every VM that still has a hypervisor."""
        for vm in self.registry.values():
            if vm.runtime is None:
                continue
            async with self.registry.locked(vm.name) as locked_vm:
                await locked_vm.destroy()
            await self._drop_if_transient(vm)

    async def __aenter__(self) -> VmManager:
        await self.start()
        return self

    async def __aexit__(
        self, _exc_type: type[BaseException] | None, _exc_val: BaseException | None, _exc_tb: object
    ) -> None:
        await self.stop()

    async def _drop_if_transient(self, vm: FirecrackerVM) -> None:
        if not vm.persistent and not vm.is_active:
            await self.registry.remove(vm.name)
            logger.debug("Transient domain removed", extra={"vm_name": vm.name})

    # -------------------------------------------------------------------------
    # Definitions
    # -------------------------------------------------------------------------

    async def define_vm(self, definition: DomainDefinition) -> FirecrackerVM:
        """Register a definition (or replace an inactive VM's definition).

        Raises:
            VmConfigError: Definition not supported
            InvalidStateError: A running VM with that name exists
        """
        definition.check_supported()

        vm = FirecrackerVM(
            definition,
            self.settings,
            monitor_factory=self._monitor_factory,
            spawner=self._spawner,
        )
        if await self.registry.add(vm):
            logger.info("Domain defined", extra={"vm_name": vm.name, "uuid": str(definition.uuid)})
            return vm

        async with self.registry.locked(definition.name) as existing:
            if existing.is_active:
                raise InvalidStateError(
                    f"Domain '{definition.name}' is running, cannot redefine it",
                    context={"vm_name": definition.name},
                )
            existing.definition = definition
            existing.persistent = True
            logger.info("Domain redefined", extra={"vm_name": existing.name})
            return existing

    async def undefine_vm(self, name: str) -> None:
        """Forget a definition. A running VM is removed once it stops.

        Raises:
            DomainNotFoundError: Unknown name
        """
        async with self.registry.locked(name) as vm:
            vm.persistent = False
            active = vm.is_active
        if not active:
            await self.registry.remove(name)
        logger.info("Domain undefined", extra={"vm_name": name, "deferred": active})

    def lookup(self, name: str) -> FirecrackerVM:
        return self.registry.get(name)

    def lookup_by_uuid(self, uuid: UUID | str) -> FirecrackerVM:
        return self.registry.get_by_uuid(uuid)

    def list_vms(self) -> list[FirecrackerVM]:
        return self.registry.values()

    def list_active_ids(self) -> list[int]:
        return [vm.id for vm in self.registry.values() if vm.is_active]

    def num_active(self) -> int:
        return sum(1 for vm in self.registry.values() if vm.is_active)

    def is_active(self, name: str) -> bool:
        return self.registry.get(name).is_active

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def create_vm(self, name: str) -> FirecrackerVM:
        """Boot a defined VM. See FirecrackerVM.create for failures."""
        async with self.registry.locked(name) as vm:
            await vm.create()
            return vm

    async def shutdown_vm(self, name: str) -> None:
        """Gracefully power off a running VM. See FirecrackerVM.shutdown."""
        async with self.registry.locked(name) as vm:
            await vm.shutdown()
        await self._drop_if_transient(vm)

    async def destroy_vm(self, name: str, *, graceful: bool = False) -> None:
        """Stop a VM, forcibly unless graceful=True and shutdown succeeds."""
        async with self.registry.locked(name) as vm:
            await vm.destroy(graceful=graceful)
        await self._drop_if_transient(vm)

    async def suspend_vm(self, name: str) -> None:
        async with self.registry.locked(name) as vm:
            await vm.suspend()

    async def resume_vm(self, name: str) -> None:
        async with self.registry.locked(name) as vm:
            await vm.resume()

    async def wait_vm(self, name: str) -> int | None:
        """Wait for the VM's hypervisor to exit on its own.

        Not taken under the VM lock: Destroy must still be able to run
        while something waits here.
        """
        vm = self.registry.get(name)
        returncode = await vm.wait()
        await self._drop_if_transient(vm)
        return returncode

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_state(self, name: str) -> tuple[VmState, StateReason]:
        """Current (state, reason), refreshed from the hypervisor.

        An unreachable hypervisor is reported as SHUTOFF with reason unknown
        instead of raising.
        """
        async with self.registry.locked(name) as vm:
            try:
                await vm.refresh()
            except ControlPlaneError as e:
                logger.warning(
                    "VM state refresh failed, reporting shut off",
                    extra={"vm_name": name, "error": str(e)},
                )
            return vm.state, vm.reason

    async def get_info(self, name: str) -> DomainInfo:
        """State, memory and vCPU summary."""
        state, reason = await self.get_state(name)
        definition = self.registry.get(name).definition
        return DomainInfo(
            state=state,
            reason=reason,
            max_memory_kib=definition.memory_kib,
            memory_kib=definition.memory_kib,
            vcpus=definition.vcpus,
            cpu_time_ns=0,
        )

    async def open_console(self, name: str) -> Path:
        """Terminal device of the VM's serial console.

        Raises:
            InvalidStateError: VM not running
            ConsoleNotAvailableError: VM has no serial console
        """
        async with self.registry.locked(name) as vm:
            if not vm.is_active:
                raise InvalidStateError("Domain is not running", context={"vm_name": name})
            path = vm.console_pty_path
            if path is None:
                raise ConsoleNotAvailableError(
                    "Cannot find character device",
                    context={"vm_name": name},
                )
            return path
