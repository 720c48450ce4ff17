"""Host detection and process utilities.

Uses psutil's OS detection constants for platform identification.
Provides PID-reuse safe process management wrappers.
"""

import asyncio
import contextlib
import os
import shutil
from enum import Enum, auto
from functools import cache
from pathlib import Path

import psutil

from fcvirt import constants


class HostOS(Enum):
    """Host operating systems relevant to the hypervisor."""

    LINUX = auto()
    """Linux (KVM available, hypervisor supported)."""

    UNKNOWN = auto()
    """Anything else: the hypervisor cannot run here."""


@cache
def detect_host_os() -> HostOS:
    """Detect current host operating system using psutil constants."""
    if psutil.LINUX:
        return HostOS.LINUX
    return HostOS.UNKNOWN


def get_runtime_dir() -> Path:
    """Default root for VM workspaces.

    Root uses /run/fcvirt. Other users get $XDG_RUNTIME_DIR/fcvirt, falling
    back to ~/.cache/fcvirt/run when no runtime dir is exported.
    """
    if os.geteuid() == 0:
        return Path(constants.DEFAULT_STATE_DIR_PRIVILEGED)
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if runtime_dir:
        return Path(runtime_dir) / constants.STATE_DIR_NAME
    return Path.home() / ".cache" / constants.STATE_DIR_NAME / "run"


def find_firecracker_binary(explicit: Path | str | None = None) -> Path | None:
    """Resolve the hypervisor binary.

    An explicit path is used as-is if it exists; otherwise `firecracker`
    is looked up on PATH.

    Returns:
        Path to the binary, or None if nothing usable was found
    """
    if explicit is not None:
        candidate = Path(explicit)
        if candidate.is_file():
            return candidate
        found = shutil.which(str(explicit))
        return Path(found) if found else None
    found = shutil.which(constants.FIRECRACKER_BINARY_NAME)
    return Path(found) if found else None


class ProcessWrapper:
    """PID-reuse safe process wrapper using psutil.

    Wraps asyncio.subprocess.Process with psutil.Process for safer PID monitoring.
    Protects against PID reuse edge cases where OS recycles PIDs.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        """Wrap asyncio process with psutil for PID-safe monitoring.

        Args:
            async_proc: asyncio subprocess.Process instance
        """
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                # Process already died or inaccessible
                self.psutil_proc = psutil.Process(async_proc.pid)

    async def is_running(self) -> bool:
        """Check if process is still running (PID-reuse safe).

        Runs the blocking psutil call in a worker thread.
        """
        if self.async_proc.returncode is not None:
            return False
        if not self.psutil_proc:
            return True

        try:
            return await asyncio.to_thread(self.psutil_proc.is_running)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    @property
    def pid(self) -> int | None:
        """Process ID."""
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Process return code (None if still running)."""
        return self.async_proc.returncode

    async def wait(self) -> int:
        """Wait for process to complete.

        Returns:
            Process exit code
        """
        return await self.async_proc.wait()

    async def terminate(self) -> None:
        """Terminate process (SIGTERM) without blocking the event loop."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.terminate)
        else:
            self.async_proc.terminate()

    async def kill(self) -> None:
        """Kill process (SIGKILL) without blocking the event loop."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.kill)
        else:
            self.async_proc.kill()

    async def wait_with_timeout(self, timeout: float) -> int:
        """Wait for process exit with timeout.

        The hypervisor never has pipes attached (stdio goes to log files or
        the console pty), so a plain wait() cannot deadlock on a full pipe.

        Raises:
            TimeoutError: If process doesn't exit within timeout
        """
        await asyncio.wait_for(self.wait(), timeout=timeout)
        return self.returncode  # type: ignore[return-value]
