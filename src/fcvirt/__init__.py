"""fcvirt: lifecycle driver for Firecracker micro-VMs.

Spawns and supervises the Firecracker hypervisor process, configures it over
its HTTP control-plane socket and tracks each VM through a small state
machine (ShutOff, Running, Paused).

Quick Start:
    ```python
    from fcvirt import DomainDefinition, DiskDevice, Settings, VmManager

    definition = DomainDefinition(
        name="vm1",
        memory_kib=512 * 1024,
        vcpus=2,
        kernel_path="/images/vmlinux",
        kernel_cmdline="reboot=k panic=1",
        root_device="vda",
        disks=[DiskDevice(target="vda", source="/images/rootfs.ext4")],
    )

    async with VmManager(Settings()) as manager:
        await manager.define_vm(definition)
        await manager.create_vm("vm1")
        await manager.suspend_vm("vm1")
        await manager.resume_vm("vm1")
        await manager.shutdown_vm("vm1")
    ```

Requirements:
    - Linux with KVM (/dev/kvm read/write)
    - Firecracker 0.25.0+
    - Python 3.12+
"""

from fcvirt.exceptions import (
    ConsoleNotAvailableError,
    ControlPlaneError,
    DomainNotFoundError,
    FcvirtError,
    InputValidationError,
    InvalidArgumentError,
    InvalidStateError,
    PermanentError,
    ProcessSpawnError,
    ProcessWaitError,
    PtyAllocationError,
    SocketTimeoutError,
    TransientError,
    VmConfigError,
    VmDependencyError,
    VmPermanentError,
    WorkspaceError,
)
from fcvirt.firecracker_vm import FirecrackerVM, VmRuntimeState
from fcvirt.models import BootConfig, DiskDevice, DomainDefinition, DomainInfo, NetworkInterface, SerialDevice
from fcvirt.monitor import FirecrackerMonitor
from fcvirt.settings import Settings
from fcvirt.vm_manager import VmManager
from fcvirt.vm_types import StateReason, VmState

__all__ = [
    "BootConfig",
    "ConsoleNotAvailableError",
    "ControlPlaneError",
    "DiskDevice",
    "DomainDefinition",
    "DomainInfo",
    "DomainNotFoundError",
    "FcvirtError",
    "FirecrackerMonitor",
    "FirecrackerVM",
    "InputValidationError",
    "InvalidArgumentError",
    "InvalidStateError",
    "NetworkInterface",
    "PermanentError",
    "ProcessSpawnError",
    "ProcessWaitError",
    "PtyAllocationError",
    "SerialDevice",
    "Settings",
    "SocketTimeoutError",
    "StateReason",
    "TransientError",
    "VmConfigError",
    "VmDependencyError",
    "VmManager",
    "VmPermanentError",
    "VmRuntimeState",
    "VmState",
    "WorkspaceError",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("fcvirt")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
