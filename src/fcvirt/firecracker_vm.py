"""Firecracker VM record and lifecycle state machine.

States: Undefined → ShutOff ⇄ Running ⇄ Paused

- create():   ShutOff → Running (workspace, spawn, socket wait, boot config, InstanceStart)
- suspend():  Running → Paused
- resume():   Paused → Running
- shutdown(): Running → ShutOff (SendCtrlAltDel, reap)
- destroy():  any → ShutOff (abort the process; optional graceful attempt first)
- refresh():  reconcile with the hypervisor's reported state

A FirecrackerVM takes no locks. VmManager serializes lifecycle calls per VM
through the registry.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from fcvirt import constants
from fcvirt._logging import get_logger
from fcvirt.exceptions import ControlPlaneError, InvalidStateError, VmDependencyError
from fcvirt.models import BootConfig, DomainDefinition
from fcvirt.monitor import FirecrackerMonitor
from fcvirt.platform_utils import find_firecracker_binary
from fcvirt.process import HypervisorProcess, relax_socket_permissions, spawn_hypervisor
from fcvirt.resource_cleanup import cleanup_file
from fcvirt.settings import Settings
from fcvirt.system_probes import check_firecracker_version
from fcvirt.vm_types import StateReason, VmState
from fcvirt.workspace import Workspace

logger = get_logger(__name__)

MonitorFactory = Callable[[Path], FirecrackerMonitor]
Spawner = Callable[..., Awaitable[HypervisorProcess]]


@dataclass
class VmRuntimeState:
    """Everything that exists only while a hypervisor runs for this VM.

    Populated incrementally during create() and replaced wholesale on the
    next one.
    """

    boot_config: BootConfig
    workspace: Workspace
    process: HypervisorProcess | None = None

    @property
    def socket_path(self) -> Path:
        return self.workspace.socket_path

    @property
    def workspace_dir(self) -> Path:
        return self.workspace.path

    @property
    def console_pty_path(self) -> Path | None:
        return self.process.console_pty_path if self.process is not None else None


class FirecrackerVM:
    """A defined VM and, while it runs, its hypervisor.

    Attributes:
        definition: Domain definition (replaceable only while inactive)
        settings: Driver settings
        persistent: False once undefined while active; the manager drops it on stop
        runtime: Runtime state of the current boot, None when shut off
    """

    def __init__(
        self,
        definition: DomainDefinition,
        settings: Settings,
        *,
        monitor_factory: MonitorFactory | None = None,
        spawner: Spawner | None = None,
    ) -> None:
        self.definition = definition
        self.settings = settings
        self.persistent = True
        self.runtime: VmRuntimeState | None = None
        self._state = VmState.SHUTOFF
        self._reason = StateReason.UNKNOWN
        self._monitor_factory = monitor_factory or self._default_monitor
        self._spawn = spawner or spawn_hypervisor

    def _default_monitor(self, socket_path: Path) -> FirecrackerMonitor:
        return FirecrackerMonitor(socket_path, timeout=self.settings.api_timeout_seconds)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def state(self) -> VmState:
        return self._state

    @property
    def reason(self) -> StateReason:
        return self._reason

    @property
    def process(self) -> HypervisorProcess | None:
        return self.runtime.process if self.runtime is not None else None

    @property
    def is_active(self) -> bool:
        """A hypervisor process is tracked for this VM and has not exited."""
        process = self.process
        return process is not None and process.returncode is None

    @property
    def id(self) -> int:
        """Runtime id: the hypervisor PID while active, -1 otherwise."""
        process = self.process
        if not self.is_active or process.pid is None:
            return -1
        return process.pid

    @property
    def console_pty_path(self) -> Path | None:
        return self.runtime.console_pty_path if self.runtime is not None else None

    def _set_state(self, state: VmState, reason: StateReason) -> None:
        old_state = self._state
        self._state = state
        self._reason = reason
        logger.debug(
            "VM state transition",
            extra={
                "vm_name": self.name,
                "old_state": old_state.value,
                "new_state": state.value,
                "reason": reason.value,
            },
        )

    def _monitor(self) -> FirecrackerMonitor:
        if self.runtime is None:
            raise InvalidStateError("Domain is not running", context={"vm_name": self.name})
        return self._monitor_factory(self.runtime.socket_path)

    def resolve_binary(self) -> Path:
        """Pick the hypervisor binary: definition emulator, then settings, then PATH.

        Raises:
            VmDependencyError: Nothing usable found
        """
        explicit = self.definition.emulator or self.settings.firecracker_bin
        binary = find_firecracker_binary(explicit)
        if binary is None:
            raise VmDependencyError(
                f"Firecracker binary not found ({explicit or constants.FIRECRACKER_BINARY_NAME})",
                context={"vm_name": self.name, "binary": str(explicit) if explicit else None},
            )
        return binary

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def create(self) -> None:
        """Boot the VM.

        On any failure the hypervisor is aborted, the workspace is removed,
        the VM is left SHUTOFF (reason failed) and the error is re-raised.

        Raises:
            InvalidStateError: A hypervisor is already running for this VM
            VmConfigError: Definition not supported (nothing spawned)
            VmDependencyError: Hypervisor binary missing or too old (nothing spawned)
            WorkspaceError, ProcessSpawnError, PtyAllocationError,
            SocketTimeoutError, ControlPlaneError: Boot step failed
        """
        await self._release_exited_runtime()
        if self.is_active:
            raise InvalidStateError(
                "Domain is already running",
                context={"vm_name": self.name, "pid": self.id},
            )

        boot_config = self.definition.to_boot_config(hyper_threading=self.settings.hyper_threading)
        binary = self.resolve_binary()
        if self.settings.check_version:
            await check_firecracker_version(binary)

        workspace: Workspace | None = None
        process: HypervisorProcess | None = None
        try:
            workspace = await Workspace.prepare(self.settings.state_dir, self.name)
            self.runtime = VmRuntimeState(boot_config=boot_config, workspace=workspace)

            process = await self._spawn(binary, workspace, with_console=self.definition.serial is not None)
            self.runtime.process = process

            await process.wait_for_socket(self.settings.socket_wait_timeout_seconds)
            await relax_socket_permissions(workspace.socket_path, self.name)

            monitor = self._monitor()
            await self._push_boot_config(monitor, boot_config)
            await monitor.start_vm()
        except Exception as e:
            logger.error(
                "VM create failed",
                extra={"vm_name": self.name, "error": str(e), "error_type": type(e).__name__},
            )
            if process is not None:
                await process.abort(self.settings.term_timeout_seconds, self.settings.kill_timeout_seconds)
            if workspace is not None:
                await workspace.cleanup()
            self.runtime = None
            self._set_state(VmState.SHUTOFF, StateReason.FAILED)
            raise

        self._set_state(VmState.RUNNING, StateReason.BOOTED)
        logger.info(
            "VM started",
            extra={
                "vm_name": self.name,
                "pid": self.id,
                "socket": str(workspace.socket_path),
                "console": str(self.console_pty_path) if self.console_pty_path else None,
            },
        )

    async def _release_exited_runtime(self) -> None:
        """Drop the runtime of a hypervisor that exited without the driver noticing."""
        runtime = self.runtime
        if runtime is None or runtime.process is None or runtime.process.returncode is None:
            return
        logger.info(
            "Releasing exited hypervisor",
            extra={"vm_name": self.name, "pid": runtime.process.pid, "returncode": runtime.process.returncode},
        )
        runtime.process.release()
        await cleanup_file(runtime.socket_path, self.name, "API socket")
        self.runtime = None

    async def _push_boot_config(self, monitor: FirecrackerMonitor, boot_config: BootConfig) -> None:
        """Machine config, kernel, root disk, NICs - in that order."""
        await monitor.set_machine_config(
            mem_size_mib=boot_config.memory_mib,
            vcpu_count=boot_config.vcpu_count,
            ht_enabled=boot_config.hyper_threading,
        )
        await monitor.set_kernel(
            kernel_image_path=boot_config.kernel_path,
            boot_args=boot_config.kernel_cmdline,
        )
        await monitor.set_disk(
            drive_id=constants.ROOT_DRIVE_ID,
            path_on_host=str(boot_config.root_disk_path),
            is_root_device=True,
            is_read_only=boot_config.root_read_only,
        )
        for index, iface in enumerate(boot_config.network_interfaces):
            await monitor.set_network(
                iface_id=f"eth{index}",
                host_dev_name=iface.host_dev_name,
                guest_mac=iface.mac,
                allow_mmds_requests=iface.allow_mmds_requests,
            )

    async def refresh(self) -> VmState:
        """Reconcile the local state with the hypervisor's.

        A failed poll is harmless if the VM was already SHUTOFF. Otherwise
        the VM is forced SHUTOFF (reason unknown) and the failure raised.

        Raises:
            ControlPlaneError: Hypervisor unreachable while the VM was believed active
        """
        previous = self._state
        if self.runtime is None:
            return previous

        status = await self._monitor().get_status()
        if status is VmState.NOSTATE:
            if previous is VmState.SHUTOFF:
                return previous
            self._set_state(VmState.SHUTOFF, StateReason.UNKNOWN)
            raise ControlPlaneError(
                "Failed to refresh the state of the VM",
                context={"vm_name": self.name, "previous_state": previous.value},
            )

        if status is not previous:
            self._set_state(status, StateReason.UNKNOWN)
        return status

    async def suspend(self) -> None:
        """Pause a running VM.

        Raises:
            ControlPlaneError: Refresh or pause request failed
            InvalidStateError: VM not running
        """
        await self.refresh()
        if self._state is not VmState.RUNNING:
            raise InvalidStateError(
                "Domain is not running",
                context={"vm_name": self.name, "state": self._state.value},
            )
        await self._monitor().change_state("Paused")
        self._set_state(VmState.PAUSED, StateReason.USER)

    async def resume(self) -> None:
        """Resume a paused VM.

        Raises:
            ControlPlaneError: Refresh or resume request failed
            InvalidStateError: VM not paused
        """
        await self.refresh()
        if self._state is not VmState.PAUSED:
            raise InvalidStateError(
                "Domain is not paused",
                context={"vm_name": self.name, "state": self._state.value},
            )
        await self._monitor().change_state("Resumed")
        self._set_state(VmState.RUNNING, StateReason.UNPAUSED)

    async def shutdown(self) -> None:
        """Ask the guest to power off and reap the hypervisor.

        Raises:
            ControlPlaneError: Refresh (while active) or SendCtrlAltDel failed
            InvalidStateError: VM not running
            ProcessWaitError: Reaping the hypervisor failed
        """
        await self.refresh()
        if self._state is not VmState.RUNNING:
            raise InvalidStateError(
                "Domain is not in running state",
                context={"vm_name": self.name, "state": self._state.value},
            )

        await self._monitor().shutdown_vm()

        runtime = self.runtime
        if runtime is not None and runtime.process is not None:
            returncode = await runtime.process.reap()
            logger.info(
                "VM shut down",
                extra={"vm_name": self.name, "pid": runtime.process.pid, "returncode": returncode},
            )
            await cleanup_file(runtime.socket_path, self.name, "API socket")
        self.runtime = None
        self._set_state(VmState.SHUTOFF, StateReason.SHUTDOWN)

    async def destroy(self, *, graceful: bool = False) -> None:
        """Stop the VM, forcibly unless a graceful shutdown succeeds.

        With graceful=True a shutdown is attempted first; any failure is
        logged and the forced path runs. Never raises for a VM that has no
        hypervisor: it simply ends SHUTOFF.
        """
        if graceful and self.is_active:
            try:
                await self.shutdown()
                return
            except Exception as e:
                logger.warning(
                    "Graceful shutdown failed, destroying",
                    extra={"vm_name": self.name, "error": str(e), "error_type": type(e).__name__},
                )

        runtime = self.runtime
        if runtime is None or runtime.process is None:
            self.runtime = None
            if self._state is not VmState.SHUTOFF:
                self._set_state(VmState.SHUTOFF, StateReason.DESTROYED)
            return

        await runtime.process.abort(self.settings.term_timeout_seconds, self.settings.kill_timeout_seconds)
        await cleanup_file(runtime.socket_path, self.name, "API socket")
        self.runtime = None
        self._set_state(VmState.SHUTOFF, StateReason.DESTROYED)
        logger.info("VM destroyed", extra={"vm_name": self.name})

    async def wait(self) -> int | None:
        """Wait for the hypervisor to exit on its own (guest poweroff).

        Returns:
            Exit code, or None if no hypervisor was running
        """
        runtime = self.runtime
        if runtime is None or runtime.process is None:
            return None
        returncode = await runtime.process.reap()
        await cleanup_file(runtime.socket_path, self.name, "API socket")
        if self.runtime is runtime:
            self.runtime = None
            self._set_state(VmState.SHUTOFF, StateReason.SHUTDOWN)
        return returncode
