"""Shared pytest fixtures for fcvirt tests."""

import json
import stat
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from fcvirt.models import DiskDevice, DomainDefinition, NetworkInterface, SerialDevice
from fcvirt.settings import Settings
from fcvirt.system_probes import _probe_cache

FAKE_FIRECRACKER = Path(__file__).parent / "fake_firecracker.py"


@pytest.fixture(autouse=True)
def _clear_probe_cache():
    """Probe results are cached per process; tests use different fake binaries."""
    _probe_cache.clear()
    yield
    _probe_cache.clear()


@pytest.fixture
def fake_firecracker(tmp_path: Path) -> Path:
    """Executable wrapper that runs tests/fake_firecracker.py with this interpreter."""
    wrapper = tmp_path / "bin" / "firecracker"
    wrapper.parent.mkdir()
    wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_FIRECRACKER}" "$@"\n')
    wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return wrapper


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def settings(state_dir: Path, fake_firecracker: Path) -> Settings:
    """Settings pointing at the fake hypervisor with short timeouts."""
    return Settings(
        state_dir=state_dir,
        firecracker_bin=fake_firecracker,
        socket_wait_timeout_seconds=5.0,
        api_timeout_seconds=2.0,
        term_timeout_seconds=1.0,
        kill_timeout_seconds=1.0,
    )


@pytest.fixture
def make_definition(tmp_path: Path) -> Callable[..., DomainDefinition]:
    """Factory for valid definitions; keyword overrides replace fields.

    Example:
        def test_something(make_definition):
            definition = make_definition(name="vm2", serials=[])
    """

    def _make(**overrides: Any) -> DomainDefinition:
        fields: dict[str, Any] = {
            "name": "vm1",
            "memory_kib": 256 * 1024,
            "vcpus": 1,
            "max_vcpus": 2,
            "kernel_path": str(tmp_path / "vmlinux"),
            "kernel_cmdline": "root=/dev/vda",
            "root_device": "vda",
            "disks": [
                DiskDevice(target="vda", source=tmp_path / "rootfs.ext4"),
                DiskDevice(target="vdb", source=tmp_path / "data.ext4"),
            ],
            "interfaces": [NetworkInterface(mac="AA:FC:00:00:00:01", host_dev_name="tap0")],
        }
        fields.update(overrides)
        return DomainDefinition(**fields)

    return _make


@pytest.fixture
def definition_file(tmp_path: Path) -> Path:
    """JSON definition on disk (for the CLI)."""
    path = tmp_path / "vm.json"
    path.write_text(
        json.dumps(
            {
                "name": "cli-vm",
                "memory_kib": 131072,
                "kernel_path": str(tmp_path / "vmlinux"),
                "kernel_cmdline": "console=ttyS0 reboot=k",
                "root_device": "vda",
                "disks": [{"target": "vda", "source": str(tmp_path / "rootfs.ext4")}],
            }
        )
    )
    return path


@pytest.fixture
def serial_definition(make_definition) -> DomainDefinition:
    return make_definition(serials=[SerialDevice(port=0)])
