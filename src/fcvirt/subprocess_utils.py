"""Subprocess lifecycle utilities.

- wait_for_socket_file: poll for the API socket a freshly spawned hypervisor creates
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

import aiofiles.os
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_delay, wait_exponential

from fcvirt import constants
from fcvirt._logging import get_logger
from fcvirt.exceptions import SocketTimeoutError

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from tenacity import RetryCallState

logger = get_logger(__name__)


class _SocketMissing(Exception):
    """Internal retry signal: socket file not there yet."""


class _wait_until_deadline(wait_exponential):  # noqa: N801 - tenacity naming convention
    """Exponential backoff whose every sleep is clamped to the time left before a deadline."""

    def __init__(self, initial: float, deadline: float) -> None:
        super().__init__(multiplier=initial, exp_base=2)
        self.deadline = deadline

    def __call__(self, retry_state: RetryCallState) -> float:
        remaining = self.deadline - time.monotonic()
        return max(0.0, min(super().__call__(retry_state), remaining))


async def wait_for_socket_file(
    path: Path,
    *,
    timeout: float = constants.SOCKET_WAIT_TIMEOUT_SECONDS,
    initial_delay: float = constants.SOCKET_WAIT_INITIAL_DELAY_SECONDS,
    abort_check: Callable[[], None] | None = None,
) -> None:
    """Wait for a file (the hypervisor's API socket) to appear.

    Polls the filesystem because there is no event to await: the socket is
    created by an external process after fork+exec. The first poll happens
    immediately; delays then grow 1ms, 2ms, 4ms, ... and the last sleep is
    cut short so the total never exceeds *timeout* by more than one check.

    Only existence is checked. The hypervisor binds and listens on the socket
    before its API thread serves requests, and the first control call surfaces
    any remaining failure as ControlPlaneError.

    Args:
        path: Socket path.
        timeout: Maximum seconds to wait.
        initial_delay: First backoff delay in seconds.
        abort_check: Optional callable invoked before each poll. Should raise
            to abort the wait early (e.g. when the spawned process has died).

    Raises:
        SocketTimeoutError: File did not appear within *timeout* seconds.
    """
    started = time.monotonic()
    polls = 0
    try:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(_SocketMissing),
            wait=_wait_until_deadline(initial_delay, started + timeout),
            stop=stop_after_delay(timeout),
            reraise=True,
        ):
            with attempt:
                polls += 1
                if abort_check is not None:
                    abort_check()
                if not await aiofiles.os.path.exists(path):
                    raise _SocketMissing
    except _SocketMissing as e:
        elapsed = time.monotonic() - started
        raise SocketTimeoutError(
            f"Timed out after {elapsed:.3f}s waiting for socket {path}",
            context={"path": str(path), "timeout": timeout, "polls": polls},
        ) from e

    logger.debug(
        "Socket appeared",
        extra={"path": str(path), "polls": polls, "elapsed_ms": round((time.monotonic() - started) * 1000, 1)},
    )
