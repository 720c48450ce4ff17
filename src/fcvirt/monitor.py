"""Firecracker control-plane client.

Architecture:
- One HTTP/1.1 exchange per call over the hypervisor's API unix socket
  (httpx.AsyncHTTPTransport(uds=...)); the host part of the URL is ignored
- Request bodies come from the typed models in fcvirt.api_models
- Success is 200 or 204; anything else raises ControlPlaneError
- No retries: the lifecycle decides what a failure means

Usage:
    monitor = FirecrackerMonitor(workspace.socket_path)
    await monitor.set_machine_config(mem_size_mib=512, vcpu_count=2)
    await monitor.start_vm()
    state = await monitor.get_status()
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

import httpx
from pydantic import ValidationError

from fcvirt import constants
from fcvirt._logging import get_logger
from fcvirt.api_models import (
    ApiErrorResponse,
    BootSourceRequest,
    DriveRequest,
    FirecrackerRequest,
    InstanceActionRequest,
    InstanceInfoResponse,
    MachineConfigRequest,
    NetworkInterfaceRequest,
    VersionResponse,
    VmStateRequest,
)
from fcvirt.exceptions import ControlPlaneError, InvalidArgumentError
from fcvirt.vm_types import VmState

if TYPE_CHECKING:
    from pathlib import Path

logger = get_logger(__name__)

# Hypervisor-reported instance state -> VmState. Everything else is NOSTATE.
_STATUS_MAP: dict[str, VmState] = {
    "Running": VmState.RUNNING,
    "Paused": VmState.PAUSED,
    "Not started": VmState.SHUTOFF,
}

_VALID_TARGET_STATES = ("Paused", "Resumed")


class FirecrackerMonitor:
    """Client for one hypervisor's control-plane socket.

    Holds no connection between calls. Not concurrency-safe by contract:
    callers serialize operations per VM.

    Attributes:
        socket_path: API unix socket created by the hypervisor
        timeout: Per-request timeout in seconds
    """

    __slots__ = ("_transport", "socket_path", "timeout")

    def __init__(
        self,
        socket_path: Path,
        *,
        timeout: float = constants.API_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Create a client for the given socket.

        Args:
            socket_path: Hypervisor API socket
            timeout: Per-request timeout in seconds
            transport: Override the unix-socket transport (tests use httpx.MockTransport)
        """
        self.socket_path = socket_path
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        transport = self._transport or httpx.AsyncHTTPTransport(uds=str(self.socket_path))
        return httpx.AsyncClient(
            transport=transport,
            base_url=constants.API_BASE_URL,
            timeout=self.timeout,
        )

    async def _send(self, method: str, path: str, body: FirecrackerRequest | None = None) -> httpx.Response:
        """Perform one exchange and check the status.

        Raises:
            ControlPlaneError: Transport failure or non-success status
        """
        payload = body.model_dump(mode="json", exclude_none=True) if body is not None else None
        ctx = {"method": method, "path": path, "socket": str(self.socket_path)}
        logger.debug("Firecracker API request", extra={**ctx, "body": payload})

        try:
            async with self._client() as client:
                response = await client.request(method, path, json=payload)
        except httpx.HTTPError as e:
            raise ControlPlaneError(
                f"Firecracker API {method} /{path.lstrip('/')} failed: {e}",
                context={**ctx, "error": str(e), "error_type": type(e).__name__},
            ) from e

        if response.status_code not in constants.API_SUCCESS_CODES:
            body_text = response.text.strip()
            fault = body_text
            try:
                fault = ApiErrorResponse.model_validate_json(body_text).fault_message or body_text
            except ValidationError:
                pass
            raise ControlPlaneError(
                f"Firecracker API {method} /{path.lstrip('/')} returned {response.status_code}: {fault}",
                context=ctx,
                status_code=response.status_code,
                body=body_text,
            )
        return response

    # -------------------------------------------------------------------------
    # Pre-boot configuration
    # -------------------------------------------------------------------------

    async def set_machine_config(self, *, mem_size_mib: int, vcpu_count: int, ht_enabled: bool = False) -> None:
        """PUT /machine-config."""
        body = MachineConfigRequest(ht_enabled=ht_enabled, mem_size_mib=mem_size_mib, vcpu_count=vcpu_count)
        await self._send("PUT", "/machine-config", body)

    async def set_kernel(self, *, kernel_image_path: str, boot_args: str) -> None:
        """PUT /boot-source."""
        body = BootSourceRequest(kernel_image_path=kernel_image_path, boot_args=boot_args)
        await self._send("PUT", "/boot-source", body)

    async def set_disk(
        self,
        *,
        drive_id: str,
        path_on_host: str,
        is_root_device: bool,
        is_read_only: bool = False,
    ) -> None:
        """PUT /drives/{drive_id}."""
        body = DriveRequest(
            drive_id=drive_id,
            path_on_host=path_on_host,
            is_root_device=is_root_device,
            is_read_only=is_read_only,
        )
        await self._send("PUT", f"/drives/{drive_id}", body)

    async def set_network(
        self,
        *,
        iface_id: str,
        host_dev_name: str,
        guest_mac: str | None = None,
        allow_mmds_requests: bool = False,
    ) -> None:
        """PUT /network-interfaces/{iface_id}."""
        body = NetworkInterfaceRequest(
            iface_id=iface_id,
            guest_mac=guest_mac,
            host_dev_name=host_dev_name,
            allow_mmds_requests=allow_mmds_requests,
        )
        await self._send("PUT", f"/network-interfaces/{iface_id}", body)

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    async def start_vm(self) -> None:
        """Boot the configured guest (InstanceStart)."""
        await self._send("PUT", "/actions", InstanceActionRequest(action_type="InstanceStart"))

    async def shutdown_vm(self) -> None:
        """Ask the guest to shut down (SendCtrlAltDel)."""
        await self._send("PUT", "/actions", InstanceActionRequest(action_type="SendCtrlAltDel"))

    async def change_state(self, state: Literal["Paused", "Resumed"] | str) -> None:
        """PATCH /vm to pause or resume the guest.

        Raises:
            InvalidArgumentError: state is not "Paused" or "Resumed" (no request is made)
            ControlPlaneError: Request failed
        """
        if state not in _VALID_TARGET_STATES:
            raise InvalidArgumentError(
                f"Invalid VM state '{state}', expected one of {', '.join(_VALID_TARGET_STATES)}",
                context={"state": state, "socket": str(self.socket_path)},
            )
        await self._send("PATCH", "/vm", VmStateRequest(state=state))  # type: ignore[arg-type]

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_status(self) -> VmState:
        """Poll the hypervisor's instance state.

        Never raises: transport errors, non-success statuses, malformed
        bodies and unrecognized states all map to NOSTATE.
        """
        try:
            response = await self._send("GET", "/")
            info = InstanceInfoResponse.model_validate_json(response.content)
        except (ControlPlaneError, ValidationError) as e:
            logger.debug(
                "Firecracker status poll failed",
                extra={"socket": str(self.socket_path), "error": str(e)},
            )
            return VmState.NOSTATE

        state = _STATUS_MAP.get(info.state, VmState.NOSTATE)
        if state is VmState.NOSTATE:
            logger.debug(
                "Unrecognized Firecracker instance state",
                extra={"socket": str(self.socket_path), "reported_state": info.state},
            )
        return state

    async def get_version(self) -> str:
        """GET /version.

        Raises:
            ControlPlaneError: Request failed or body malformed
        """
        response = await self._send("GET", "/version")
        try:
            return VersionResponse.model_validate_json(response.content).firecracker_version
        except ValidationError as e:
            raise ControlPlaneError(
                "Malformed Firecracker version response",
                context={"socket": str(self.socket_path), "error": str(e)},
                status_code=response.status_code,
                body=response.text,
            ) from e
