"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from fcvirt import constants
from fcvirt.platform_utils import get_runtime_dir


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with FCVIRT_ prefix.
    Example: FCVIRT_STATE_DIR=/var/run/fcvirt
    """

    model_config = SettingsConfigDict(
        env_prefix="FCVIRT_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Hypervisor
    firecracker_bin: Path | None = None
    """Hypervisor binary for definitions without an emulator. None = `firecracker` on PATH."""
    check_version: bool = True
    """Refuse to start when the hypervisor is older than MIN_FIRECRACKER_VERSION."""

    # Workspaces (<state_dir>/<vm name>/)
    state_dir: Path = Field(default_factory=get_runtime_dir)

    # Boot
    hyper_threading: bool = False

    # Timeouts
    socket_wait_timeout_seconds: float = Field(default=constants.SOCKET_WAIT_TIMEOUT_SECONDS, gt=0)
    api_timeout_seconds: float = Field(default=constants.API_TIMEOUT_SECONDS, gt=0)
    term_timeout_seconds: float = Field(default=constants.PROCESS_TERM_TIMEOUT_SECONDS, gt=0)
    kill_timeout_seconds: float = Field(default=constants.PROCESS_KILL_TIMEOUT_SECONDS, gt=0)
