"""Test doubles and helpers shared across test modules."""

import json
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from fcvirt.vm_types import VmState


def read_requests(workspace_dir: Path) -> list[dict[str, Any]]:
    """Requests recorded by the fake hypervisor, in order."""
    log = workspace_dir / "fake_requests.jsonl"
    if not log.exists():
        return []
    return [json.loads(line) for line in log.read_text().splitlines() if line]


def make_mock_monitor(status: VmState = VmState.RUNNING) -> MagicMock:
    """FirecrackerMonitor double whose calls are recorded in order on .mock_calls."""
    monitor = MagicMock()
    for method in (
        "set_machine_config",
        "set_kernel",
        "set_disk",
        "set_network",
        "start_vm",
        "shutdown_vm",
        "change_state",
        "get_version",
    ):
        setattr(monitor, method, AsyncMock())
    monitor.get_status = AsyncMock(return_value=status)
    return monitor


def make_mock_process(pid: int = 4242, console: Path | None = None) -> MagicMock:
    """HypervisorProcess double."""
    process = MagicMock()
    process.pid = pid
    process.returncode = None
    process.console_pty_path = console
    process.wait_for_socket = AsyncMock()
    process.reap = AsyncMock(return_value=0)
    process.abort = AsyncMock(return_value=True)
    process.terminate = AsyncMock()
    return process
