"""End-to-end lifecycle against tests/fake_firecracker.py.

Real process spawning, pty allocation, socket polling and HTTP over the
unix socket; only the hypervisor itself is a stand-in.
"""

import asyncio
import stat
from pathlib import Path

import pytest
from helpers import read_requests

from fcvirt.exceptions import ControlPlaneError, InvalidStateError, ProcessSpawnError
from fcvirt.monitor import FirecrackerMonitor
from fcvirt.process import HypervisorProcess, spawn_hypervisor
from fcvirt.vm_manager import VmManager
from fcvirt.vm_types import StateReason, VmState


@pytest.fixture
def spawned() -> list[HypervisorProcess]:
    return []


@pytest.fixture
async def manager(settings, spawned):
    async def recording_spawner(*args, **kwargs) -> HypervisorProcess:
        proc = await spawn_hypervisor(*args, **kwargs)
        spawned.append(proc)
        return proc

    async with VmManager(settings, spawner=recording_spawner) as mgr:
        yield mgr


class TestFullLifecycle:
    """Create → Suspend → Resume → Shutdown → Destroy."""

    async def test_lifecycle(self, manager, make_definition, settings, spawned) -> None:
        await manager.define_vm(make_definition())
        vm = await manager.create_vm("vm1")
        workspace_dir = settings.state_dir / "vm1"
        socket_path = workspace_dir / "firecracker-lv.socket"

        assert await manager.get_state("vm1") == (VmState.RUNNING, StateReason.BOOTED)
        assert vm.id == spawned[0].pid
        assert stat.S_IMODE(socket_path.stat().st_mode) == 0o666

        boot_requests = [(r["method"], r["path"]) for r in read_requests(workspace_dir)][:5]
        assert boot_requests == [
            ("PUT", "/machine-config"),
            ("PUT", "/boot-source"),
            ("PUT", "/drives/rootfs"),
            ("PUT", "/network-interfaces/eth0"),
            ("PUT", "/actions"),
        ]
        assert read_requests(workspace_dir)[0]["body"] == {"ht_enabled": False, "mem_size_mib": 256, "vcpu_count": 2}

        await manager.suspend_vm("vm1")
        assert await manager.get_state("vm1") == (VmState.PAUSED, StateReason.USER)

        await manager.resume_vm("vm1")
        assert await manager.get_state("vm1") == (VmState.RUNNING, StateReason.UNPAUSED)

        await manager.shutdown_vm("vm1")
        assert await manager.get_state("vm1") == (VmState.SHUTOFF, StateReason.SHUTDOWN)
        assert vm.id == -1
        assert spawned[0].returncode == 0
        assert not socket_path.exists()
        assert (workspace_dir / "fc_err.log").exists()

        # Nothing left to destroy
        await manager.destroy_vm("vm1")
        assert await manager.get_state("vm1") == (VmState.SHUTOFF, StateReason.SHUTDOWN)

        patch_bodies = [r["body"] for r in read_requests(workspace_dir) if r["method"] == "PATCH"]
        assert patch_bodies == [{"state": "Paused"}, {"state": "Resumed"}]

    async def test_recreate_after_shutdown(self, manager, make_definition, spawned) -> None:
        await manager.define_vm(make_definition())
        await manager.create_vm("vm1")
        await manager.shutdown_vm("vm1")

        await manager.create_vm("vm1")

        assert await manager.get_state("vm1") == (VmState.RUNNING, StateReason.BOOTED)
        assert len(spawned) == 2
        assert spawned[0].pid != spawned[1].pid

    async def test_invalid_transitions(self, manager, make_definition) -> None:
        await manager.define_vm(make_definition())
        await manager.create_vm("vm1")

        with pytest.raises(InvalidStateError):
            await manager.resume_vm("vm1")
        await manager.suspend_vm("vm1")
        with pytest.raises(InvalidStateError):
            await manager.suspend_vm("vm1")
        with pytest.raises(InvalidStateError):
            await manager.shutdown_vm("vm1")

        assert await manager.get_state("vm1") == (VmState.PAUSED, StateReason.USER)


class TestDestroy:
    """Forced and graceful teardown of a real process."""

    async def test_forced(self, manager, make_definition, settings, spawned) -> None:
        await manager.define_vm(make_definition())
        await manager.create_vm("vm1")

        await manager.destroy_vm("vm1")

        assert spawned[0].returncode is not None
        assert await manager.get_state("vm1") == (VmState.SHUTOFF, StateReason.DESTROYED)
        assert not (settings.state_dir / "vm1" / "firecracker-lv.socket").exists()

    async def test_forced_while_paused(self, manager, make_definition, spawned) -> None:
        await manager.define_vm(make_definition())
        await manager.create_vm("vm1")
        await manager.suspend_vm("vm1")

        await manager.destroy_vm("vm1")

        assert spawned[0].returncode is not None
        assert manager.is_active("vm1") is False

    async def test_graceful(self, manager, make_definition, spawned) -> None:
        await manager.define_vm(make_definition())
        await manager.create_vm("vm1")

        await manager.destroy_vm("vm1", graceful=True)

        assert spawned[0].returncode == 0
        assert await manager.get_state("vm1") == (VmState.SHUTOFF, StateReason.SHUTDOWN)

    async def test_graceful_falls_back_when_paused(self, manager, make_definition, spawned) -> None:
        await manager.define_vm(make_definition())
        await manager.create_vm("vm1")
        await manager.suspend_vm("vm1")

        await manager.destroy_vm("vm1", graceful=True)

        assert spawned[0].returncode is not None
        assert await manager.get_state("vm1") == (VmState.SHUTOFF, StateReason.DESTROYED)


class TestCreateFailures:
    """A failed Create leaves nothing behind."""

    async def test_control_plane_rejects_kernel(
        self, monkeypatch, manager, make_definition, settings, spawned
    ) -> None:
        monkeypatch.setenv("FAKE_FC_FAIL_PATH", "/boot-source")
        await manager.define_vm(make_definition())

        with pytest.raises(ControlPlaneError, match="injected failure") as exc_info:
            await manager.create_vm("vm1")

        assert exc_info.value.status_code == 400
        assert spawned[0].returncode is not None
        assert not (settings.state_dir / "vm1").exists()
        assert manager.is_active("vm1") is False
        assert await manager.get_state("vm1") == (VmState.SHUTOFF, StateReason.FAILED)

    async def test_hypervisor_exits_early(self, monkeypatch, manager, make_definition, settings) -> None:
        monkeypatch.setenv("FAKE_FC_EXIT_CODE", "1")
        await manager.define_vm(make_definition())

        with pytest.raises(ProcessSpawnError):
            await manager.create_vm("vm1")

        assert not (settings.state_dir / "vm1").exists()
        assert await manager.get_state("vm1") == (VmState.SHUTOFF, StateReason.FAILED)


class TestConsoleAndWait:
    """Serial console wiring and guest-initiated poweroff."""

    async def test_console(self, manager, serial_definition, settings) -> None:
        await manager.define_vm(serial_definition)
        await manager.create_vm("vm1")

        console = await manager.open_console("vm1")

        assert console.exists()
        assert str(console).startswith("/dev/")
        assert not (settings.state_dir / "vm1" / "fc_std.log").exists()
        boot = next(r for r in read_requests(settings.state_dir / "vm1") if r["path"] == "/boot-source")
        assert boot["body"]["boot_args"] == "root=/dev/vda console=ttyS0"

    async def test_guest_poweroff(self, manager, make_definition, settings) -> None:
        await manager.define_vm(make_definition())
        await manager.create_vm("vm1")

        # Guest powers off without going through the driver
        await FirecrackerMonitor(settings.state_dir / "vm1" / "firecracker-lv.socket").shutdown_vm()
        returncode = await asyncio.wait_for(manager.wait_vm("vm1"), timeout=5.0)

        assert returncode == 0
        assert await manager.get_state("vm1") == (VmState.SHUTOFF, StateReason.SHUTDOWN)

    async def test_two_vms_concurrently(self, manager, make_definition, spawned) -> None:
        await manager.define_vm(make_definition(name="a"))
        await manager.define_vm(make_definition(name="b"))

        await asyncio.gather(manager.create_vm("a"), manager.create_vm("b"))

        assert manager.num_active() == 2
        assert len({p.pid for p in spawned}) == 2
        assert sorted(manager.list_active_ids()) == sorted(p.pid for p in spawned)


def test_fake_binary_is_executable(fake_firecracker: Path) -> None:
    assert fake_firecracker.stat().st_mode & stat.S_IXUSR
