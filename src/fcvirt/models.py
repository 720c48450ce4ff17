"""Domain definition and derived models.

DomainDefinition is the hypervisor-agnostic description of a VM handed to the
driver (memory, vcpus, kernel, disks, NICs, console devices). BootConfig is the
frozen parameter set derived from it once per Create and pushed to the
hypervisor before InstanceStart.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fcvirt import constants
from fcvirt.exceptions import VmConfigError
from fcvirt.vm_types import StateReason, VmState


class DiskDevice(BaseModel):
    """Block device attached to the VM."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    target: str = Field(min_length=1, description="Guest-facing device name (e.g. 'vda')")
    source: Path = Field(description="Backing file on the host")
    read_only: bool = False


class NetworkInterface(BaseModel):
    """Host tap device exposed to the guest as a virtio-net NIC."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    mac: str | None = Field(default=None, description="Guest MAC address (hypervisor picks one when unset)")
    host_dev_name: str = Field(min_length=1, description="Host tap device name")
    allow_mmds_requests: bool = False


class SerialDevice(BaseModel):
    """Character device; only a pty-backed serial port is supported."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    port: int = Field(default=0, ge=0)
    device_type: Literal["serial", "console", "parallel", "channel"] = "serial"
    source_type: str = "pty"


class DomainDefinition(BaseModel):
    """Read-only description of a VM.

    Counts of parallel ports, extra consoles and channels are kept only so
    that definitions using them can be rejected.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    uuid: UUID = Field(default_factory=uuid4)
    memory_kib: int = Field(gt=0, description="Guest memory in KiB")
    vcpus: int = Field(default=1, ge=1, description="Online vCPUs")
    max_vcpus: int | None = Field(default=None, ge=1, description="Maximum vCPUs (defaults to vcpus)")
    emulator: Path | None = Field(default=None, description="Hypervisor binary override")
    kernel_path: str = ""
    kernel_cmdline: str = ""
    root_device: str = Field(default="", description="Target name of the root disk")
    disks: tuple[DiskDevice, ...] = ()
    interfaces: tuple[NetworkInterface, ...] = ()
    serials: tuple[SerialDevice, ...] = ()
    parallels: int = Field(default=0, ge=0)
    consoles: int = Field(default=0, ge=0)
    channels: int = Field(default=0, ge=0)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Names become directory names under the state dir."""
        if "/" in v or v in (".", ".."):
            raise ValueError(f"Domain name cannot be used as a directory name: {v!r}")
        return v

    @property
    def effective_max_vcpus(self) -> int:
        return self.max_vcpus if self.max_vcpus is not None else self.vcpus

    @property
    def memory_mib(self) -> int:
        return self.memory_kib // 1024

    @property
    def serial(self) -> SerialDevice | None:
        """The serial console, if configured."""
        return self.serials[0] if self.serials else None

    def check_supported(self) -> None:
        """Reject definitions the hypervisor cannot run.

        Raises:
            VmConfigError: Describing the first unsupported feature found
        """
        ctx = {"domain": self.name}
        if "\n" in self.name:
            raise VmConfigError(f"Domain name {self.name!r} contains a newline", context=ctx)
        if not self.kernel_path.strip():
            raise VmConfigError("Kernel path must be specified", context=ctx)
        if not self.root_device.strip():
            raise VmConfigError("Root device must be specified", context=ctx)
        if self.memory_mib < 1:
            raise VmConfigError(
                "Memory must be at least 1 MiB",
                context={**ctx, "memory_kib": self.memory_kib},
            )
        if self.parallels:
            raise VmConfigError("Parallel devices are not supported", context=ctx)
        if self.consoles:
            raise VmConfigError("Console devices are not supported, use a serial device", context=ctx)
        if self.channels:
            raise VmConfigError("Channel devices are not supported", context=ctx)
        if len(self.serials) > 1:
            raise VmConfigError(
                "Only one serial device is supported",
                context={**ctx, "serials": len(self.serials)},
            )
        serial = self.serial
        if serial is not None:
            if serial.device_type != "serial":
                raise VmConfigError(
                    f"Unsupported character device type '{serial.device_type}'",
                    context=ctx,
                )
            if serial.source_type != "pty":
                raise VmConfigError(
                    f"Unsupported serial source type '{serial.source_type}', only 'pty' is supported",
                    context=ctx,
                )
        self.root_disk()

    def root_disk(self) -> DiskDevice:
        """Resolve the disk whose target matches the root device.

        Raises:
            VmConfigError: No disk targets the root device
        """
        for disk in self.disks:
            if disk.target == self.root_device:
                return disk
        raise VmConfigError(
            f"No disk found for root device '{self.root_device}'",
            context={"domain": self.name, "targets": [d.target for d in self.disks]},
        )

    def boot_args(self) -> str:
        """Kernel command line, with the serial console appended when configured."""
        serial = self.serial
        if serial is None:
            return self.kernel_cmdline
        console = constants.SERIAL_CONSOLE_ARG.format(port=serial.port)
        return f"{self.kernel_cmdline} {console}" if self.kernel_cmdline else console

    def to_boot_config(self, *, hyper_threading: bool = False) -> BootConfig:
        """Derive the frozen boot parameters pushed before start.

        Raises:
            VmConfigError: Definition not supported
        """
        self.check_supported()
        return BootConfig(
            memory_mib=self.memory_mib,
            vcpu_count=self.effective_max_vcpus,
            hyper_threading=hyper_threading,
            kernel_path=self.kernel_path,
            kernel_cmdline=self.boot_args(),
            root_disk_path=self.root_disk().source,
            root_read_only=self.root_disk().read_only,
            network_interfaces=self.interfaces,
        )


class BootConfig(BaseModel):
    """Parameters pushed to the hypervisor before InstanceStart. Immutable."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    memory_mib: int = Field(ge=1)
    vcpu_count: int = Field(ge=1)
    hyper_threading: bool = False
    kernel_path: str
    kernel_cmdline: str = ""
    root_disk_path: Path
    root_read_only: bool = False
    network_interfaces: tuple[NetworkInterface, ...] = ()


class DomainInfo(BaseModel):
    """Summary returned by VmManager.get_info."""

    model_config = ConfigDict(frozen=True)

    state: VmState
    reason: StateReason
    max_memory_kib: int
    memory_kib: int
    vcpus: int
    cpu_time_ns: int = 0
