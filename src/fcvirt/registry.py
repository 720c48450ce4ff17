"""In-memory VM registry with per-VM exclusive locks.

The registry is the only place VMs are looked up. Lifecycle operations hold
the VM's lock for their whole duration; locks of different VMs are independent
so VMs progress concurrently on one event loop.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from uuid import UUID

from fcvirt._logging import get_logger
from fcvirt.exceptions import DomainNotFoundError, InvalidArgumentError
from fcvirt.firecracker_vm import FirecrackerVM

logger = get_logger(__name__)


class VmRegistry:
    """name → FirecrackerVM map with a uuid index.

    The registry lock only guards the maps; it is never held while a VM
    lock is awaited.
    """

    __slots__ = ("_lock", "_vm_locks", "_vms")

    def __init__(self) -> None:
        self._vms: dict[str, FirecrackerVM] = {}
        self._vm_locks: dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()

    async def add(self, vm: FirecrackerVM) -> bool:
        """Register a VM under its name.

        Returns:
            False if the name is already taken; the registered VM is kept
        """
        async with self._lock:
            if vm.name in self._vms:
                return False
            self._vms[vm.name] = vm
            self._vm_locks.setdefault(vm.name, asyncio.Lock())
            return True

    async def remove(self, name: str) -> FirecrackerVM | None:
        async with self._lock:
            self._vm_locks.pop(name, None)
            return self._vms.pop(name, None)

    def get(self, name: str) -> FirecrackerVM:
        """Look up a VM by name.

        Raises:
            DomainNotFoundError: No VM with that name
        """
        vm = self._vms.get(name)
        if vm is None:
            raise DomainNotFoundError(f"No domain with matching name '{name}'", context={"name": name})
        return vm

    def get_by_uuid(self, uuid: UUID | str) -> FirecrackerVM:
        """Look up a VM by uuid.

        Raises:
            InvalidArgumentError: Not a valid uuid
            DomainNotFoundError: No VM with that uuid
        """
        try:
            wanted = UUID(str(uuid))
        except ValueError as e:
            raise InvalidArgumentError(f"Invalid uuid '{uuid}'", context={"uuid": str(uuid)}) from e
        for vm in self._vms.values():
            if vm.definition.uuid == wanted:
                return vm
        raise DomainNotFoundError(f"No domain with matching uuid '{wanted}'", context={"uuid": str(wanted)})

    def __contains__(self, name: object) -> bool:
        return name in self._vms

    def __len__(self) -> int:
        return len(self._vms)

    def values(self) -> list[FirecrackerVM]:
        """Snapshot of registered VMs."""
        return list(self._vms.values())

    @contextlib.asynccontextmanager
    async def locked(self, name: str) -> AsyncIterator[FirecrackerVM]:
        """Hold the VM's exclusive lock and yield the VM.

        The VM is looked up again after the lock is acquired, so a VM removed
        while the caller waited raises instead of being operated on.

        Raises:
            DomainNotFoundError: No VM with that name
        """
        self.get(name)
        lock = self._vm_locks.setdefault(name, asyncio.Lock())
        async with lock:
            yield self.get(name)
