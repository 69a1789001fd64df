"""Constants, state paths and user configuration for ocdev."""

from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path

import yaml


CONTAINER_PREFIX = "ocdev-"
PROFILE_NAME = "ocdev"
BASE_IMAGE = "images:ubuntu/25.10"

SSH_PORT_START = 2200
SERVICE_PORT_START = 2300
PORTS_PER_VM = 10
SERVICE_PORTS_COUNT = 10
MAX_PORT = 65535

MAX_NAME_LENGTH = 50

CONFIG_FILENAME = "config.yaml"


class ExitCode(IntEnum):
    """Process exit codes returned by the CLI."""

    SUCCESS = 0
    ERROR = 1
    PREREQ = 2
    NOT_FOUND = 3
    NOT_RUNNING = 4


# Resolved at call time so that HOME can change between invocations (and tests)
def get_ocdev_dir() -> Path:
    """Return the per-user state directory (~/.ocdev)."""
    return Path.home() / ".ocdev"


def get_ports_file() -> Path:
    """Return the path of the port allocation store."""
    return get_ocdev_dir() / "ports"


def get_lock_file() -> Path:
    """Return the path of the advisory lock file."""
    return get_ocdev_dir() / ".lock"


@dataclass
class OcdevConfig:
    """User configuration from ~/.ocdev/config.yaml."""

    base_image: str = BASE_IMAGE
    incus_command: str = "incus"
    post_create: Path | None = None
    mount_host_dirs: bool = True

    @classmethod
    def default(cls) -> "OcdevConfig":
        """Return the default configuration."""
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> "OcdevConfig":
        """Create a config from a dictionary."""
        post_create = data.get("post_create")
        return cls(
            base_image=data.get("base_image", BASE_IMAGE),
            incus_command=data.get("incus_command", "incus"),
            post_create=Path(post_create).expanduser() if post_create else None,
            mount_host_dirs=bool(data.get("mount_host_dirs", True)),
        )


def load_config() -> OcdevConfig:
    """Load ~/.ocdev/config.yaml.

    Returns:
        OcdevConfig with the loaded settings, or defaults if the file is
        missing or unreadable.
    """
    config_path = get_ocdev_dir() / CONFIG_FILENAME
    if not config_path.exists():
        return OcdevConfig.default()

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except (yaml.YAMLError, OSError):
        return OcdevConfig.default()

    if not isinstance(data, dict):
        return OcdevConfig.default()
    return OcdevConfig.from_dict(data)
