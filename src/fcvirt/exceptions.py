"""Exception hierarchy for fcvirt.

All exceptions inherit from FcvirtError base class.

Hierarchy:
    FcvirtError (base)
    ├── TransientError (retryable marker base)
    │   ├── SocketTimeoutError        ← control socket never appeared
    │   ├── ControlPlaneError         ← hypervisor API call failed
    │   └── ProcessWaitError          ← reaping the hypervisor failed
    ├── PermanentError (non-retryable marker base)
    │   ├── VmPermanentError
    │   │   ├── VmConfigError         ← definition not supported
    │   │   ├── VmDependencyError     ← missing/old hypervisor binary
    │   │   ├── ProcessSpawnError     ← hypervisor could not be launched
    │   │   ├── PtyAllocationError    ← console pty could not be opened
    │   │   └── WorkspaceError        ← workspace/log file I/O failed
    │   ├── InvalidStateError         ← operation not allowed in current state
    │   ├── ConsoleNotAvailableError  ← VM has no serial console
    │   └── DomainNotFoundError       ← no VM with that name/uuid
    └── InputValidationError (caller-bug marker base)
        └── InvalidArgumentError      ← unsupported argument value
"""

from __future__ import annotations

from typing import Any


class FcvirtError(Exception):
    """Base exception for all fcvirt errors with structured context.

    All custom exceptions in this module inherit from this base class,
    allowing callers to catch any driver-related error with a single handler.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(FcvirtError):
    """Base for transient errors that may succeed on retry.

    Use this as a marker base class to identify errors that are
    potentially recoverable through retry (e.g., a slow hypervisor start,
    a busy control socket).
    """


class PermanentError(FcvirtError):
    """Base for permanent errors that won't succeed on retry.

    Use this as a marker base class to identify errors that are
    not recoverable through retry (e.g., unsupported definitions,
    missing binaries, lifecycle misuse).
    """


class InputValidationError(FcvirtError):
    """Base for input validation errors (caller bugs, not VM failures).

    The VM is unaffected; the caller should fix their input and retry.
    """


# =============================================================================
# Transient Errors (retryable)
# =============================================================================


class SocketTimeoutError(TransientError):
    """Control socket did not appear in time.

    Raised when the hypervisor process was spawned but its API socket was
    not observed on the filesystem before the deadline.
    """


class ControlPlaneError(TransientError):
    """Hypervisor control-plane request failed.

    Raised when the HTTP exchange over the API socket fails at the transport
    level or the hypervisor answers with a status other than 200/204.

    Attributes:
        status_code: HTTP status returned by the hypervisor (None on transport failure)
        body: Response body text (empty on transport failure)
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        status_code: int | None = None,
        body: str = "",
    ):
        ctx = context or {}
        if status_code is not None:
            ctx.setdefault("status_code", status_code)
        if body:
            ctx.setdefault("body", body)
        super().__init__(message, ctx)
        self.status_code = status_code
        self.body = body


class ProcessWaitError(TransientError):
    """Waiting for the hypervisor process to exit failed."""


# =============================================================================
# Permanent Errors (non-retryable)
# =============================================================================


class VmPermanentError(PermanentError):
    """Permanent VM errors - won't succeed on retry.

    Base class for VM errors that need a configuration or host change
    before the same request can succeed.
    """


class VmConfigError(VmPermanentError):
    """Invalid or unsupported VM configuration.

    Raised when the domain definition uses devices or settings the
    hypervisor cannot honor (e.g., parallel ports, several serials,
    a root device with no matching disk).
    """


class VmDependencyError(VmPermanentError):
    """Required dependency missing.

    Raised when the hypervisor binary cannot be found or is older than
    the minimum supported version.
    """


class ProcessSpawnError(VmPermanentError):
    """Hypervisor process could not be launched.

    Raised when the binary is missing or not executable, or when the child
    exits before creating its control socket.
    """


class PtyAllocationError(VmPermanentError):
    """Pseudo-terminal allocation for the serial console failed."""


class WorkspaceError(VmPermanentError):
    """Workspace filesystem operation failed.

    Raised when the VM directory cannot be recreated or a log file
    cannot be opened.
    """


class InvalidStateError(PermanentError):
    """Operation not allowed in the VM's current state.

    Raised for lifecycle misuse, e.g. suspending a paused VM or creating
    a VM whose hypervisor is still running.
    """


class ConsoleNotAvailableError(PermanentError):
    """The VM has no serial console to attach to."""


class DomainNotFoundError(PermanentError):
    """No VM with the requested name or uuid is defined."""


class InvalidArgumentError(InputValidationError):
    """Argument value not supported by the operation."""
