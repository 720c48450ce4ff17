"""VM state and state-reason enums shared by the monitor and the lifecycle."""

from enum import Enum


class VmState(str, Enum):
    """Externally visible VM state."""

    NOSTATE = "nostate"
    """Unknown; also the monitor's answer when the hypervisor can't be polled."""

    RUNNING = "running"
    PAUSED = "paused"
    SHUTOFF = "shutoff"


class StateReason(str, Enum):
    """Why the VM entered its current state."""

    BOOTED = "booted"
    UNPAUSED = "unpaused"
    USER = "user requested"
    SHUTDOWN = "shutdown"
    DESTROYED = "destroyed"
    FAILED = "failed"
    UNKNOWN = "unknown"
