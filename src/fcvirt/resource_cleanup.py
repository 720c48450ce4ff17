"""Resource cleanup utilities for VM lifecycle management.

Cleanup operations that log errors but don't fail. Used on every teardown
path (Destroy, Shutdown, failed Create).
"""

import asyncio
import contextlib
import os
from pathlib import Path

import aiofiles.os

from fcvirt import constants
from fcvirt._logging import get_logger
from fcvirt.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def cleanup_process(
    proc: ProcessWrapper | None,
    name: str,
    context_id: str,
    term_timeout: float = constants.PROCESS_TERM_TIMEOUT_SECONDS,
    kill_timeout: float = constants.PROCESS_KILL_TIMEOUT_SECONDS,
) -> bool:
    """Force cleanup of subprocess (SIGTERM → SIGKILL).

    - SIGTERM, bounded wait, then SIGKILL and another bounded wait
    - Always reaps, so no zombie is left behind
    - Tolerates a process that already exited
    - Never raises (logs instead)

    Args:
        proc: ProcessWrapper to kill (None safe - returns immediately)
        name: Process name for logging (e.g., "firecracker")
        context_id: Context for logging (VM name)
        term_timeout: Seconds to wait after SIGTERM before SIGKILL
        kill_timeout: Seconds to wait after SIGKILL before giving up

    Returns:
        True if process cleaned successfully, False if issues occurred
    """
    if proc is None:
        return True

    try:
        if proc.returncode is not None:
            logger.debug(
                f"{name} already terminated",
                extra={"context_id": context_id, "returncode": proc.returncode},
            )
            return True

        logger.debug(f"Sending SIGTERM to {name}", extra={"context_id": context_id, "pid": proc.pid})
        await proc.terminate()

        try:
            await proc.wait_with_timeout(timeout=term_timeout)
            logger.debug(
                f"{name} stopped gracefully (SIGTERM)",
                extra={"context_id": context_id, "returncode": proc.returncode},
            )
            return True
        except TimeoutError:
            logger.warning(
                f"{name} didn't respond to SIGTERM, force killing",
                extra={"context_id": context_id, "term_timeout": term_timeout},
            )

        logger.debug(f"Sending SIGKILL to {name}", extra={"context_id": context_id, "pid": proc.pid})
        await proc.kill()

        try:
            await proc.wait_with_timeout(timeout=kill_timeout)
            logger.warning(
                f"{name} force killed (SIGKILL)",
                extra={"context_id": context_id, "returncode": proc.returncode},
            )
            return True
        except TimeoutError:
            logger.error(
                f"{name} didn't respond to SIGKILL within timeout",
                extra={"context_id": context_id, "kill_timeout": kill_timeout, "pid": proc.pid},
            )

            # Still reap in background to prevent zombie
            async def reap() -> None:
                with contextlib.suppress(Exception):
                    await proc.wait()

            _ = asyncio.create_task(reap())  # noqa: RUF006
            return False

    except ProcessLookupError:
        # Process already dead (race between check and signal)
        logger.debug(f"{name} already dead (ProcessLookupError)", extra={"context_id": context_id})
        with contextlib.suppress(Exception):
            await proc.wait_with_timeout(timeout=kill_timeout)
        return True

    except Exception as e:
        logger.error(
            f"{name} cleanup error",
            extra={"context_id": context_id, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False


async def cleanup_file(
    file_path: Path | None,
    context_id: str,
    description: str = "file",
) -> bool:
    """Delete file. Succeeds if the file doesn't exist.

    Args:
        file_path: Path to file to delete (None safe - returns immediately)
        context_id: Context for logging (VM name)
        description: Description for logging (e.g., "API socket")

    Returns:
        True if file cleaned successfully, False if issues occurred
    """
    if file_path is None:
        return True

    try:
        await aiofiles.os.remove(file_path)
        logger.debug(
            f"{description} deleted",
            extra={"context_id": context_id, "path": str(file_path)},
        )
        return True

    except FileNotFoundError:
        logger.debug(
            f"{description} already deleted",
            extra={"context_id": context_id, "path": str(file_path)},
        )
        return True

    except OSError as e:
        logger.error(
            f"{description} OS error during deletion",
            extra={"context_id": context_id, "path": str(file_path), "error": str(e), "error_type": type(e).__name__},
        )
        return False


def close_fds(*fds: int | None) -> None:
    """Close raw file descriptors, ignoring ones that are None or already closed."""
    for fd in fds:
        if fd is None:
            continue
        with contextlib.suppress(OSError):
            os.close(fd)
