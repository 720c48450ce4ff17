"""Host and hypervisor capability probes.

These probes run once and cache their results. Async probes share a cache
container to avoid global statements.
"""

import asyncio
import os
import re
from pathlib import Path

import aiofiles.os

from fcvirt import constants
from fcvirt._logging import get_logger
from fcvirt.exceptions import VmDependencyError
from fcvirt.platform_utils import HostOS, detect_host_os

logger = get_logger(__name__)

# "Firecracker v1.7.0" (newer releases may append "-dev" or a build suffix)
_VERSION_PATTERN = re.compile(r"Firecracker v(\d+)\.(\d+)\.(\d+)")


class _ProbeCache:
    """Container for cached probe results.

    Locks are lazily initialized so they're created in the running event loop.
    They prevent several VMs starting at once from all running the same
    probe subprocess.
    """

    __slots__ = ("_locks", "kvm", "versions")

    def __init__(self) -> None:
        self.kvm: bool | None = None
        self.versions: dict[str, tuple[int, int, int] | None] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def get_lock(self, name: str) -> asyncio.Lock:
        """Get or create a lock for the given probe (lazy initialization)."""
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    def clear(self) -> None:
        self.kvm = None
        self.versions.clear()


_probe_cache = _ProbeCache()


def parse_firecracker_version(output: str) -> tuple[int, int, int] | None:
    """Extract (major, minor, patch) from `firecracker --version` output."""
    match = _VERSION_PATTERN.search(output)
    if match is None:
        return None
    return int(match.group(1)), int(match.group(2)), int(match.group(3))


async def probe_firecracker_version(binary: Path) -> tuple[int, int, int] | None:
    """Run `<binary> --version` and parse the result (cached per binary).

    Returns:
        Version tuple, or None when the binary can't be run or its output
        can't be parsed
    """
    key = str(binary)
    if key in _probe_cache.versions:
        return _probe_cache.versions[key]

    async with _probe_cache.get_lock(f"version:{key}"):
        if key in _probe_cache.versions:
            return _probe_cache.versions[key]

        version: tuple[int, int, int] | None = None
        try:
            proc = await asyncio.create_subprocess_exec(
                key,
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=constants.VERSION_PROBE_TIMEOUT_SECONDS)
            if proc.returncode == 0:
                version = parse_firecracker_version(stdout.decode(errors="replace"))
            else:
                logger.warning(
                    "Firecracker version probe failed",
                    extra={"binary": key, "returncode": proc.returncode},
                )
        except (OSError, TimeoutError) as e:
            logger.warning("Firecracker version probe failed", extra={"binary": key, "error": str(e)})

        _probe_cache.versions[key] = version
        return version


async def check_firecracker_version(binary: Path) -> tuple[int, int, int]:
    """Verify the hypervisor binary runs and is recent enough.

    Raises:
        VmDependencyError: Version unknown or older than MIN_FIRECRACKER_VERSION
    """
    version = await probe_firecracker_version(binary)
    minimum = constants.MIN_FIRECRACKER_VERSION
    if version is None:
        raise VmDependencyError(
            f"Unable to determine Firecracker version of {binary}",
            context={"binary": str(binary)},
        )
    if version < minimum:
        raise VmDependencyError(
            f"Firecracker {'.'.join(map(str, version))} is too old, "
            f"{'.'.join(map(str, minimum))} or newer is required",
            context={"binary": str(binary), "version": version, "minimum": minimum},
        )
    logger.debug("Firecracker version OK", extra={"binary": str(binary), "version": version})
    return version


async def check_kvm_available() -> bool:
    """Check that /dev/kvm exists and is readable and writable (cached).

    A missing or inaccessible device only produces a warning: the hypervisor
    itself reports the precise failure when it tries to boot.
    """
    if _probe_cache.kvm is not None:
        return _probe_cache.kvm

    async with _probe_cache.get_lock("kvm"):
        if _probe_cache.kvm is not None:
            return _probe_cache.kvm

        kvm_path = "/dev/kvm"
        available = False
        if detect_host_os() is not HostOS.LINUX:
            logger.warning("Firecracker requires a Linux host with KVM")
        elif not await aiofiles.os.path.exists(kvm_path):
            logger.warning("KVM not available: /dev/kvm does not exist")
        elif not await aiofiles.os.access(kvm_path, os.R_OK | os.W_OK):
            logger.warning("KVM not available: permission denied on /dev/kvm")
        else:
            available = True

        _probe_cache.kvm = available
        return available
