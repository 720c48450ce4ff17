"""Constants for fcvirt configuration and limits."""

from typing import Final

# ============================================================================
# Workspace Layout
# ============================================================================

SOCKET_NAME: Final[str] = "firecracker-lv.socket"
"""File name of the hypervisor API socket inside the VM workspace."""

STDOUT_LOG_NAME: Final[str] = "fc_std.log"
"""Hypervisor stdout log (used when no serial console is configured)."""

STDERR_LOG_NAME: Final[str] = "fc_err.log"
"""Hypervisor stderr log."""

WORKSPACE_MODE: Final[int] = 0o777
"""Permissions of the VM workspace directory (hypervisor must create its socket there)."""

LOG_FILE_MODE: Final[int] = 0o666
"""Permissions used when creating the hypervisor log files."""

SOCKET_MODE: Final[int] = 0o666
"""Permissions applied to the API socket once it appears (rw for group/other)."""

HYPERVISOR_UMASK: Final[int] = 0o002
"""umask applied in the hypervisor child before exec."""

DEFAULT_STATE_DIR_PRIVILEGED: Final[str] = "/run/fcvirt"
"""Workspace root when running as root."""

STATE_DIR_NAME: Final[str] = "fcvirt"
"""Sub-directory of $XDG_RUNTIME_DIR (or the user cache) used when unprivileged."""

# ============================================================================
# Hypervisor Process
# ============================================================================

FIRECRACKER_BINARY_NAME: Final[str] = "firecracker"
"""Hypervisor binary looked up on PATH when no explicit path is configured."""

MIN_FIRECRACKER_VERSION: Final[tuple[int, int, int]] = (0, 25, 0)
"""Oldest hypervisor release whose API matches the requests issued by the monitor."""

VERSION_PROBE_TIMEOUT_SECONDS: Final[float] = 5.0
"""Timeout for `firecracker --version`."""

SOCKET_WAIT_TIMEOUT_SECONDS: Final[float] = 10.0
"""Maximum time to wait for the API socket to appear after spawn."""

SOCKET_WAIT_INITIAL_DELAY_SECONDS: Final[float] = 0.001
"""First poll delay; doubles on every poll, clamped to the remaining deadline."""

PROCESS_TERM_TIMEOUT_SECONDS: Final[float] = 3.0
"""Grace period after SIGTERM before SIGKILL during abort."""

PROCESS_KILL_TIMEOUT_SECONDS: Final[float] = 2.0
"""Grace period after SIGKILL before giving up on reaping."""

# ============================================================================
# Control Plane
# ============================================================================

API_BASE_URL: Final[str] = "http://localhost"
"""Base URL for requests over the unix socket (host part is ignored)."""

API_TIMEOUT_SECONDS: Final[float] = 5.0
"""Per-request timeout for control-plane calls."""

API_SUCCESS_CODES: Final[frozenset[int]] = frozenset({200, 204})
"""HTTP status codes the hypervisor uses for success."""

ROOT_DRIVE_ID: Final[str] = "rootfs"
"""Drive id under which the root disk is registered with the hypervisor."""

SERIAL_CONSOLE_ARG: Final[str] = "console=ttyS{port}"
"""Kernel argument appended when the definition has a serial console."""

# ============================================================================
# CLI
# ============================================================================

EXIT_SUCCESS: Final[int] = 0
EXIT_CLI_ERROR: Final[int] = 2
EXIT_DRIVER_ERROR: Final[int] = 125
