"""Tests for VmManager: registry, define/undefine, queries, console, locking."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from helpers import make_mock_monitor, make_mock_process

from fcvirt.exceptions import (
    ConsoleNotAvailableError,
    DomainNotFoundError,
    InvalidArgumentError,
    InvalidStateError,
    VmConfigError,
    VmDependencyError,
)
from fcvirt.settings import Settings
from fcvirt.vm_manager import VmManager
from fcvirt.vm_types import StateReason, VmState

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def unit_settings(settings: Settings) -> Settings:
    return settings.model_copy(update={"check_version": False})


@pytest.fixture
def monitor():
    return make_mock_monitor()


@pytest.fixture
def process():
    return make_mock_process(console=Path("/dev/pts/9"))


@pytest.fixture
def spawner(process):
    return AsyncMock(return_value=process)


@pytest.fixture
async def manager(unit_settings, monitor, spawner):
    async with VmManager(unit_settings, monitor_factory=lambda _socket: monitor, spawner=spawner) as mgr:
        yield mgr


# ============================================================================
# Startup
# ============================================================================


class TestStart:
    """Host probes run on start."""

    async def test_missing_configured_binary(self, unit_settings, tmp_path: Path) -> None:
        settings = unit_settings.model_copy(update={"check_version": True, "firecracker_bin": tmp_path / "nope"})
        with pytest.raises(VmDependencyError):
            await VmManager(settings).start()

    async def test_configured_binary_checked(self, settings) -> None:
        manager = VmManager(settings)
        await manager.start()
        await manager.start()  # idempotent
        await manager.stop()

    async def test_defaults_from_environment(self, monkeypatch, tmp_path: Path) -> None:
        monkeypatch.setenv("FCVIRT_STATE_DIR", str(tmp_path / "env-state"))
        assert VmManager().settings.state_dir == tmp_path / "env-state"


# ============================================================================
# Definitions and lookup
# ============================================================================


class TestDefine:
    """define_vm / undefine_vm / lookups."""

    async def test_define_and_lookup(self, manager, make_definition) -> None:
        definition = make_definition()
        vm = await manager.define_vm(definition)

        assert manager.lookup("vm1") is vm
        assert manager.lookup_by_uuid(definition.uuid) is vm
        assert manager.lookup_by_uuid(str(definition.uuid)) is vm
        assert manager.list_vms() == [vm]
        assert vm.state is VmState.SHUTOFF

    async def test_unknown_name(self, manager) -> None:
        with pytest.raises(DomainNotFoundError, match="ghost"):
            manager.lookup("ghost")

    async def test_unknown_uuid(self, manager) -> None:
        with pytest.raises(DomainNotFoundError):
            manager.lookup_by_uuid(uuid4())

    async def test_malformed_uuid(self, manager, make_definition) -> None:
        await manager.define_vm(make_definition())
        with pytest.raises(InvalidArgumentError, match="not-a-uuid"):
            manager.lookup_by_uuid("not-a-uuid")

    async def test_concurrent_define_same_name(self, manager, make_definition) -> None:
        # Both defines get past their own checks before either registers
        async with manager.registry._lock:
            tasks = [
                asyncio.create_task(manager.define_vm(make_definition(memory_kib=128 * 1024))),
                asyncio.create_task(manager.define_vm(make_definition(memory_kib=512 * 1024))),
            ]
            await asyncio.sleep(0)
        first, second = await asyncio.gather(*tasks)

        assert first is second
        assert manager.list_vms() == [first]
        assert manager.lookup("vm1").definition.memory_kib == 512 * 1024

    async def test_unsupported_not_registered(self, manager, make_definition) -> None:
        with pytest.raises(VmConfigError):
            await manager.define_vm(make_definition(channels=2))
        assert manager.list_vms() == []

    async def test_redefine_inactive(self, manager, make_definition) -> None:
        vm = await manager.define_vm(make_definition(memory_kib=128 * 1024))
        again = await manager.define_vm(make_definition(memory_kib=512 * 1024))

        assert again is vm
        assert vm.definition.memory_kib == 512 * 1024

    async def test_redefine_running(self, manager, make_definition) -> None:
        await manager.define_vm(make_definition())
        await manager.create_vm("vm1")

        with pytest.raises(InvalidStateError, match="running"):
            await manager.define_vm(make_definition(memory_kib=512 * 1024))

    async def test_undefine_inactive(self, manager, make_definition) -> None:
        await manager.define_vm(make_definition())
        await manager.undefine_vm("vm1")
        with pytest.raises(DomainNotFoundError):
            manager.lookup("vm1")

    async def test_undefine_running_is_deferred(self, manager, make_definition) -> None:
        await manager.define_vm(make_definition())
        await manager.create_vm("vm1")

        await manager.undefine_vm("vm1")
        assert manager.is_active("vm1")

        await manager.destroy_vm("vm1")
        with pytest.raises(DomainNotFoundError):
            manager.lookup("vm1")

    async def test_undefine_unknown(self, manager) -> None:
        with pytest.raises(DomainNotFoundError):
            await manager.undefine_vm("ghost")


# ============================================================================
# Lifecycle via the manager
# ============================================================================


class TestLifecycle:
    """Operations go through the registry."""

    async def test_active_bookkeeping(self, manager, make_definition) -> None:
        await manager.define_vm(make_definition(name="a"))
        await manager.define_vm(make_definition(name="b"))
        await manager.create_vm("a")

        assert manager.num_active() == 1
        assert manager.list_active_ids() == [4242]
        assert manager.is_active("a") is True
        assert manager.is_active("b") is False

    async def test_suspend_resume_shutdown(self, manager, make_definition, monitor) -> None:
        await manager.define_vm(make_definition())
        await manager.create_vm("vm1")

        await manager.suspend_vm("vm1")
        monitor.get_status.return_value = VmState.PAUSED
        assert await manager.get_state("vm1") == (VmState.PAUSED, StateReason.USER)

        await manager.resume_vm("vm1")
        monitor.get_status.return_value = VmState.RUNNING
        assert await manager.get_state("vm1") == (VmState.RUNNING, StateReason.UNPAUSED)

        await manager.shutdown_vm("vm1")
        assert await manager.get_state("vm1") == (VmState.SHUTOFF, StateReason.SHUTDOWN)
        assert manager.num_active() == 0

    async def test_destroy_graceful(self, manager, make_definition, monitor, process) -> None:
        await manager.define_vm(make_definition())
        await manager.create_vm("vm1")

        await manager.destroy_vm("vm1", graceful=True)

        monitor.shutdown_vm.assert_awaited_once()
        process.abort.assert_not_awaited()

    async def test_destroy_unknown(self, manager) -> None:
        with pytest.raises(DomainNotFoundError):
            await manager.destroy_vm("ghost")

    async def test_wait(self, manager, make_definition) -> None:
        await manager.define_vm(make_definition())
        await manager.create_vm("vm1")
        assert await manager.wait_vm("vm1") == 0
        assert manager.is_active("vm1") is False

    async def test_operations_on_one_vm_are_serialized(self, manager, make_definition, process) -> None:
        await manager.define_vm(make_definition())

        await asyncio.gather(manager.create_vm("vm1"), manager.destroy_vm("vm1"))

        # create held the lock first; destroy then saw a running VM
        process.abort.assert_awaited_once()
        assert await manager.get_state("vm1") == (VmState.SHUTOFF, StateReason.DESTROYED)

    async def test_vms_progress_independently(self, manager, make_definition) -> None:
        await manager.define_vm(make_definition(name="a"))
        await manager.define_vm(make_definition(name="b"))

        await asyncio.gather(manager.create_vm("a"), manager.create_vm("b"))

        assert manager.num_active() == 2

    async def test_stop_destroys_active(self, unit_settings, monitor, spawner, process, make_definition) -> None:
        manager = VmManager(unit_settings, monitor_factory=lambda _socket: monitor, spawner=spawner)
        async with manager:
            await manager.define_vm(make_definition())
            await manager.create_vm("vm1")

        process.abort.assert_awaited_once()
        assert manager.num_active() == 0


# ============================================================================
# Queries
# ============================================================================


class TestQueries:
    """get_state / get_info / open_console."""

    async def test_state_of_defined_vm(self, manager, make_definition, monitor) -> None:
        await manager.define_vm(make_definition())
        assert await manager.get_state("vm1") == (VmState.SHUTOFF, StateReason.UNKNOWN)
        monitor.get_status.assert_not_awaited()

    async def test_state_unreachable_reports_shutoff(self, manager, make_definition, monitor) -> None:
        await manager.define_vm(make_definition())
        await manager.create_vm("vm1")
        monitor.get_status.return_value = VmState.NOSTATE

        assert await manager.get_state("vm1") == (VmState.SHUTOFF, StateReason.UNKNOWN)

    async def test_info(self, manager, make_definition) -> None:
        await manager.define_vm(make_definition(memory_kib=256 * 1024, vcpus=2, max_vcpus=4))
        await manager.create_vm("vm1")

        info = await manager.get_info("vm1")

        assert info.state is VmState.RUNNING
        assert info.reason is StateReason.BOOTED
        assert info.max_memory_kib == 256 * 1024
        assert info.memory_kib == 256 * 1024
        assert info.vcpus == 2
        assert info.cpu_time_ns == 0

    async def test_console(self, manager, serial_definition) -> None:
        await manager.define_vm(serial_definition)
        await manager.create_vm("vm1")
        assert await manager.open_console("vm1") == Path("/dev/pts/9")

    async def test_console_not_running(self, manager, serial_definition) -> None:
        await manager.define_vm(serial_definition)
        with pytest.raises(InvalidStateError):
            await manager.open_console("vm1")

    async def test_console_after_hypervisor_exit(self, manager, serial_definition, process) -> None:
        await manager.define_vm(serial_definition)
        await manager.create_vm("vm1")
        process.returncode = 0
        with pytest.raises(InvalidStateError):
            await manager.open_console("vm1")

    async def test_console_without_serial(self, manager, make_definition, spawner) -> None:
        spawner.return_value = make_mock_process(console=None)
        await manager.define_vm(make_definition())
        await manager.create_vm("vm1")
        with pytest.raises(ConsoleNotAvailableError):
            await manager.open_console("vm1")
