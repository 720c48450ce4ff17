"""Per-VM workspace directory.

Layout (<state_dir>/<vm name>/):
    firecracker-lv.socket   hypervisor API socket (created by the hypervisor)
    fc_err.log              hypervisor stderr (append)
    fc_std.log              hypervisor stdout when no serial console (append)

The directory is wiped and recreated on every Create so a stale socket from a
previous boot can never be mistaken for the new hypervisor's.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import shutil
from pathlib import Path

import aiofiles.os

from fcvirt import constants
from fcvirt._logging import get_logger
from fcvirt.exceptions import WorkspaceError

logger = get_logger(__name__)


class Workspace:
    """Filesystem workspace of a single VM.

    Attributes:
        path: Workspace directory
        vm_name: Owning VM (for logging)
    """

    __slots__ = ("path", "vm_name")

    def __init__(self, state_dir: Path, vm_name: str) -> None:
        self.path = Path(state_dir) / vm_name
        self.vm_name = vm_name

    @property
    def socket_path(self) -> Path:
        """API socket path; a pure function of the workspace directory."""
        return self.path / constants.SOCKET_NAME

    @property
    def stdout_log(self) -> Path:
        return self.path / constants.STDOUT_LOG_NAME

    @property
    def stderr_log(self) -> Path:
        return self.path / constants.STDERR_LOG_NAME

    @classmethod
    async def prepare(cls, state_dir: Path, vm_name: str) -> Workspace:
        """Delete any existing workspace for vm_name and create a fresh one.

        Raises:
            WorkspaceError: Removal or creation failed
        """
        workspace = cls(state_dir, vm_name)
        ctx = {"vm_name": vm_name, "path": str(workspace.path)}
        try:
            with contextlib.suppress(FileNotFoundError):
                await asyncio.to_thread(shutil.rmtree, workspace.path)
            await aiofiles.os.makedirs(workspace.path, exist_ok=False)
            # mkdir honors the umask; the hypervisor may run as another user
            await asyncio.to_thread(os.chmod, workspace.path, constants.WORKSPACE_MODE)
        except OSError as e:
            raise WorkspaceError(
                f"Failed to prepare workspace {workspace.path}: {e}",
                context={**ctx, "error": str(e), "error_type": type(e).__name__},
            ) from e

        logger.debug("Workspace prepared", extra=ctx)
        return workspace

    def open_log(self, path: Path) -> int:
        """Open a log file for the hypervisor with append semantics.

        Returns:
            Raw file descriptor (caller closes it)

        Raises:
            WorkspaceError: File could not be opened
        """
        try:
            return os.open(path, os.O_CREAT | os.O_APPEND | os.O_WRONLY, constants.LOG_FILE_MODE)
        except OSError as e:
            raise WorkspaceError(
                f"Failed to open log file {path}: {e}",
                context={"vm_name": self.vm_name, "path": str(path), "error": str(e)},
            ) from e

    async def cleanup(self) -> bool:
        """Remove the workspace tree. Best effort: never raises.

        Returns:
            True if the directory is gone, False if removal failed
        """
        try:
            await asyncio.to_thread(shutil.rmtree, self.path)
        except FileNotFoundError:
            return True
        except OSError as e:
            logger.warning(
                "Failed to remove workspace",
                extra={"vm_name": self.vm_name, "path": str(self.path), "error": str(e)},
            )
            return False
        logger.debug("Workspace removed", extra={"vm_name": self.vm_name, "path": str(self.path)})
        return True
