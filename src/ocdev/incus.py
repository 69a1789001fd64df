"""Thin wrapper around the ``incus`` command line.

Every interaction with the container runtime goes through this module. Names
passed in are user-facing container names; the ``ocdev-`` prefix is added
here.
"""

import subprocess
from pathlib import Path

from .config import CONTAINER_PREFIX

_incus_command = "incus"


class IncusError(RuntimeError):
    """Raised when an incus operation exits non-zero."""

    def __init__(self, operation: str, returncode: int, stderr: str = ""):
        self.operation = operation
        self.returncode = returncode
        self.stderr = stderr.strip()
        message = f"Failed to {operation} (exit {returncode})"
        if self.stderr:
            message += f": {self.stderr}"
        super().__init__(message)


def configure(command: str) -> None:
    """Set the incus executable used for all subsequent calls."""
    global _incus_command
    _incus_command = command


def get_command() -> str:
    return _incus_command


def container_name(name: str) -> str:
    """Return the incus instance name for an ocdev container."""
    return f"{CONTAINER_PREFIX}{name}"


def strip_prefix(instance: str) -> str:
    """Return the ocdev container name for an incus instance name."""
    if instance.startswith(CONTAINER_PREFIX):
        return instance[len(CONTAINER_PREFIX):]
    return instance


def run_incus(args: list[str], check: bool = False, capture: bool = True) -> subprocess.CompletedProcess:
    """Run an incus command and return the result.

    Args:
        args: Arguments after the incus executable.
        check: Raise CalledProcessError on non-zero exit.
        capture: Capture stdout/stderr. Interactive and long-running commands
            pass False so their output reaches the terminal.
    """
    return subprocess.run(
        [_incus_command] + args,
        capture_output=capture,
        text=True,
        check=check,
    )


def _run_or_raise(args: list[str], operation: str, capture: bool = True) -> subprocess.CompletedProcess:
    result = run_incus(args, capture=capture)
    if result.returncode != 0:
        raise IncusError(operation, result.returncode, result.stderr or "")
    return result


def _info(name: str) -> subprocess.CompletedProcess:
    return run_incus(["info", container_name(name)])


def container_exists(name: str) -> bool:
    """Check whether the container exists."""
    return _info(name).returncode == 0


def container_status(name: str) -> str | None:
    """Return the container status (e.g. RUNNING, STOPPED), or None if missing."""
    result = _info(name)
    if result.returncode != 0:
        return None
    for line in result.stdout.splitlines():
        if line.startswith("Status:"):
            return line.split(":", 1)[1].strip().upper()
    return None


def container_running(name: str) -> bool:
    """Check whether the container exists and is running."""
    return container_status(name) == "RUNNING"


def list_containers() -> list[tuple[str, str]]:
    """List ocdev containers as (name, status) pairs, without the prefix.

    Raises:
        IncusError: If incus fails for any reason other than there being no
            containers.
    """
    result = run_incus(["list", "--format=csv", "-c", "n,s", CONTAINER_PREFIX])
    if result.returncode != 0:
        output = (result.stdout or "") + (result.stderr or "")
        if "No container" in output:
            return []
        raise IncusError("list containers", result.returncode, result.stderr or "")

    containers = []
    for line in result.stdout.strip().splitlines():
        if not line:
            continue
        parts = line.split(",")
        if len(parts) >= 2 and parts[0].startswith(CONTAINER_PREFIX):
            containers.append((strip_prefix(parts[0]), parts[1]))
    return containers


def list_devices(name: str) -> list[str]:
    """Return the names of devices configured on the container."""
    result = _run_or_raise(
        ["config", "device", "list", container_name(name)],
        f"list devices of '{name}'",
    )
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def get_device_option(name: str, device: str, key: str) -> str | None:
    """Return one option of a device (e.g. its ``connect`` target), or None."""
    result = run_incus(["config", "device", "get", container_name(name), device, key])
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def add_proxy_device(name: str, device: str, listen: str, connect: str) -> None:
    """Add a proxy device forwarding ``listen`` on the host to ``connect`` in the container."""
    _run_or_raise(
        [
            "config", "device", "add", container_name(name), device, "proxy",
            f"listen={listen}", f"connect={connect}", "bind=host",
        ],
        f"add proxy device '{device}' to '{name}'",
    )


def add_disk_device(name: str, device: str, source: Path, path: str, readonly: bool = False) -> None:
    """Mount a host path into the container."""
    args = [
        "config", "device", "add", container_name(name), device, "disk",
        f"source={source}", f"path={path}",
    ]
    if readonly:
        args.append("readonly=true")
    args.append("shift=true")
    _run_or_raise(args, f"add disk device '{device}' to '{name}'")


def remove_device(name: str, device: str) -> None:
    """Remove a device from the container."""
    _run_or_raise(
        ["config", "device", "remove", container_name(name), device],
        f"remove device '{device}' from '{name}'",
    )


def launch(name: str, image: str, profiles: list[str]) -> None:
    """Launch a new container from an image."""
    args = ["launch", image, container_name(name)]
    for profile in profiles:
        args += ["--profile", profile]
    _run_or_raise(args, "launch container", capture=False)


def copy_snapshot(source: str, snapshot: str, name: str) -> None:
    """Create a container as a copy of another container's snapshot."""
    _run_or_raise(
        ["copy", f"{container_name(source)}/{snapshot}", container_name(name)],
        f"copy snapshot '{source}/{snapshot}'",
        capture=False,
    )


def snapshot_exists(name: str, snapshot: str) -> bool:
    """Check whether a snapshot exists on the container."""
    result = run_incus(["snapshot", "list", container_name(name), "--format=csv"])
    if result.returncode != 0:
        return False
    for line in result.stdout.strip().splitlines():
        if line and line.split(",")[0] == snapshot:
            return True
    return False


def start(name: str) -> None:
    _run_or_raise(["start", container_name(name)], f"start container '{name}'")


def stop(name: str) -> None:
    _run_or_raise(["stop", container_name(name)], f"stop container '{name}'")


def delete(name: str, force: bool = False) -> None:
    """Delete the container."""
    args = ["delete", container_name(name)]
    if force:
        args.append("--force")
    _run_or_raise(args, f"delete container '{name}'")


def push_file(name: str, source: Path, dest: str) -> None:
    """Copy a host file into the container."""
    _run_or_raise(
        ["file", "push", str(source), f"{container_name(name)}{dest}"],
        f"push {source} to '{name}'",
    )


def exec_in(name: str, command: list[str], capture: bool = False) -> subprocess.CompletedProcess:
    """Run a command inside the container and return the result unchecked."""
    return run_incus(["exec", container_name(name), "--"] + command, capture=capture)


def profile_exists(profile: str) -> bool:
    return run_incus(["profile", "show", profile]).returncode == 0


def create_profile(profile: str) -> None:
    _run_or_raise(["profile", "create", profile], f"create profile '{profile}'")


def set_profile_option(profile: str, key: str, value: str) -> None:
    _run_or_raise(["profile", "set", profile, f"{key}={value}"], f"set {key} on profile '{profile}'")
