"""Hypervisor process supervision.

Spawns `firecracker --api-sock <socket>` inside a VM workspace, wires its
stdio to log files or to a console pseudo-terminal, waits for the API socket,
and tears the process down again (graceful reap or SIGTERM → SIGKILL abort).
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from pathlib import Path

from fcvirt import constants
from fcvirt._logging import get_logger
from fcvirt.exceptions import ProcessSpawnError, ProcessWaitError, PtyAllocationError
from fcvirt.platform_utils import ProcessWrapper
from fcvirt.resource_cleanup import cleanup_process, close_fds
from fcvirt.subprocess_utils import wait_for_socket_file
from fcvirt.workspace import Workspace

logger = get_logger(__name__)


def _set_hypervisor_umask() -> None:
    os.umask(constants.HYPERVISOR_UMASK)


class HypervisorProcess:
    """Handle to a running hypervisor child.

    Owned by the VM's runtime state for one boot cycle. The secondary side of
    the console pty (when there is one) stays open here until the process is
    reaped or aborted, so the primary side the child writes to never sees a
    hangup while a console client reconnects.

    Attributes:
        process: PID-reuse safe process handle
        socket_path: API socket the hypervisor was told to create
        console_pty_path: Terminal device for console attachment (None without serial)
        vm_name: Owning VM (for logging)
    """

    __slots__ = ("_held_fds", "console_pty_path", "process", "socket_path", "vm_name")

    def __init__(
        self,
        process: ProcessWrapper,
        socket_path: Path,
        vm_name: str,
        console_pty_path: Path | None = None,
        held_fds: tuple[int, ...] = (),
    ) -> None:
        self.process = process
        self.socket_path = socket_path
        self.vm_name = vm_name
        self.console_pty_path = console_pty_path
        self._held_fds = held_fds

    @property
    def pid(self) -> int | None:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    def ensure_alive(self) -> None:
        """Raise if the hypervisor already exited.

        Raises:
            ProcessSpawnError: Process is gone
        """
        if self.process.returncode is not None:
            raise ProcessSpawnError(
                f"Hypervisor exited with code {self.process.returncode} before creating its API socket",
                context={"vm_name": self.vm_name, "pid": self.pid, "returncode": self.process.returncode},
            )

    async def wait_for_socket(self, timeout: float = constants.SOCKET_WAIT_TIMEOUT_SECONDS) -> None:
        """Wait for the API socket, failing fast if the process dies first.

        Raises:
            SocketTimeoutError: Socket did not appear in time
            ProcessSpawnError: Process exited while waiting
        """
        await wait_for_socket_file(self.socket_path, timeout=timeout, abort_check=self.ensure_alive)

    async def terminate(self) -> None:
        """Send SIGTERM without waiting."""
        with contextlib.suppress(ProcessLookupError):
            await self.process.terminate()

    async def reap(self) -> int:
        """Block until the process exits and release its descriptors.

        Returns:
            Exit code

        Raises:
            ProcessWaitError: Waiting failed
        """
        try:
            returncode = await self.process.wait()
        except (OSError, RuntimeError) as e:
            raise ProcessWaitError(
                f"Failed to wait for hypervisor process: {e}",
                context={"vm_name": self.vm_name, "pid": self.pid, "error": str(e)},
            ) from e
        finally:
            self.release()
        logger.debug("Hypervisor reaped", extra={"vm_name": self.vm_name, "pid": self.pid, "returncode": returncode})
        return returncode

    async def abort(
        self,
        term_timeout: float = constants.PROCESS_TERM_TIMEOUT_SECONDS,
        kill_timeout: float = constants.PROCESS_KILL_TIMEOUT_SECONDS,
    ) -> bool:
        """SIGTERM → bounded wait → SIGKILL → reap. Never raises.

        Returns:
            True if the process is confirmed gone
        """
        try:
            return await cleanup_process(
                self.process,
                "firecracker",
                self.vm_name,
                term_timeout=term_timeout,
                kill_timeout=kill_timeout,
            )
        finally:
            self.release()

    def release(self) -> None:
        """Close descriptors held for the child (console pty). Idempotent."""
        close_fds(*self._held_fds)
        self._held_fds = ()


async def spawn_hypervisor(
    binary: Path,
    workspace: Workspace,
    *,
    with_console: bool = False,
) -> HypervisorProcess:
    """Launch the hypervisor for a prepared workspace.

    stderr always goes to fc_err.log (append). Without a console, stdout goes
    to fc_std.log and stdin is /dev/null. With a console, a pty pair is
    allocated: the child's stdin and stdout are the primary side and the
    secondary's device path is recorded for console attachment.

    Args:
        binary: Hypervisor executable
        workspace: Prepared VM workspace
        with_console: Allocate a pty for the serial console

    Raises:
        WorkspaceError: Log file could not be opened
        PtyAllocationError: pty pair could not be allocated
        ProcessSpawnError: Binary missing or not executable
    """
    socket_path = workspace.socket_path
    ctx = {"vm_name": workspace.vm_name, "binary": str(binary), "socket": str(socket_path)}

    stderr_fd = workspace.open_log(workspace.stderr_log)
    stdout_fd: int | None = None
    primary_fd: int | None = None
    secondary_fd: int | None = None
    console_pty_path: Path | None = None

    try:
        if with_console:
            try:
                primary_fd, secondary_fd = os.openpty()
                console_pty_path = Path(os.ttyname(secondary_fd))
            except OSError as e:
                raise PtyAllocationError(
                    f"Failed to allocate console pty: {e}",
                    context={**ctx, "error": str(e)},
                ) from e
            child_stdin: int = primary_fd
            child_stdout: int = primary_fd
        else:
            stdout_fd = workspace.open_log(workspace.stdout_log)
            child_stdin = asyncio.subprocess.DEVNULL
            child_stdout = stdout_fd

        try:
            async_proc = await asyncio.create_subprocess_exec(
                str(binary),
                "--api-sock",
                str(socket_path),
                stdin=child_stdin,
                stdout=child_stdout,
                stderr=stderr_fd,
                start_new_session=True,
                preexec_fn=_set_hypervisor_umask,
            )
        except OSError as e:
            raise ProcessSpawnError(
                f"Failed to launch hypervisor {binary}: {e}",
                context={**ctx, "error": str(e), "error_type": type(e).__name__},
            ) from e
    except BaseException:
        close_fds(secondary_fd)
        raise
    finally:
        # The child holds its own copies now
        close_fds(stderr_fd, stdout_fd, primary_fd)

    proc = ProcessWrapper(async_proc)
    logger.info(
        "Hypervisor started",
        extra={**ctx, "pid": proc.pid, "console": str(console_pty_path) if console_pty_path else None},
    )
    held = (secondary_fd,) if secondary_fd is not None else ()
    return HypervisorProcess(proc, socket_path, workspace.vm_name, console_pty_path, held)


async def relax_socket_permissions(socket_path: Path, vm_name: str) -> bool:
    """Allow group/other to use the API socket. Failure is only logged.

    Returns:
        True if permissions were changed
    """
    try:
        await asyncio.to_thread(os.chmod, socket_path, constants.SOCKET_MODE)
    except OSError as e:
        logger.warning(
            "Failed to relax API socket permissions",
            extra={"vm_name": vm_name, "socket": str(socket_path), "error": str(e)},
        )
        return False
    return True
