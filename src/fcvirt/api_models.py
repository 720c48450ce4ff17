"""Firecracker control-plane request/response models.

Protocol: HTTP/1.1 over the hypervisor's API unix socket, JSON bodies.
Every request body sent by FirecrackerMonitor is built from one of these
models; responses are validated before use.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

# ============================================================================
# Request Models
# ============================================================================


class FirecrackerRequest(BaseModel):
    """Base class for all request bodies."""

    model_config = ConfigDict(extra="forbid")


class MachineConfigRequest(FirecrackerRequest):
    """PUT /machine-config."""

    ht_enabled: bool = False
    mem_size_mib: int = Field(ge=1)
    vcpu_count: int = Field(ge=1, description="Configured maximum vCPUs")


class BootSourceRequest(FirecrackerRequest):
    """PUT /boot-source."""

    kernel_image_path: str
    boot_args: str = ""


class DriveRequest(FirecrackerRequest):
    """PUT /drives/{drive_id}."""

    drive_id: str = Field(min_length=1)
    path_on_host: str
    is_root_device: bool
    is_read_only: bool = False


class NetworkInterfaceRequest(FirecrackerRequest):
    """PUT /network-interfaces/{iface_id}.

    guest_mac is omitted from the body when unset so the hypervisor
    generates one.
    """

    iface_id: str = Field(min_length=1)
    guest_mac: str | None = None
    host_dev_name: str
    allow_mmds_requests: bool = False


class InstanceActionRequest(FirecrackerRequest):
    """PUT /actions."""

    action_type: Literal["InstanceStart", "SendCtrlAltDel"]


class VmStateRequest(FirecrackerRequest):
    """PATCH /vm."""

    state: Literal["Paused", "Resumed"]


# ============================================================================
# Response Models
# ============================================================================


class InstanceInfoResponse(BaseModel):
    """GET / response. Only `state` is consumed."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    state: str
    vmm_version: str | None = None
    app_name: str | None = None


class VersionResponse(BaseModel):
    """GET /version response."""

    model_config = ConfigDict(extra="ignore")

    firecracker_version: str


class ApiErrorResponse(BaseModel):
    """Error body the hypervisor returns with 4xx/5xx."""

    model_config = ConfigDict(extra="ignore")

    fault_message: str = ""
