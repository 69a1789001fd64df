"""Shared fixtures for ocdev tests."""

import subprocess
from contextlib import contextmanager
from pathlib import Path

import pytest

from ocdev import incus


class FakeIncus:
    """In-memory stand-in for the incus functions used by ocdev.

    Containers are keyed by their ocdev name (without prefix). Each holds a
    status and a dict of devices mapping device name to its options.
    """

    def __init__(self):
        self.containers: dict[str, dict] = {}
        self.snapshots: dict[str, set[str]] = {}
        self.profiles: dict[str, dict[str, str]] = {}
        self.calls: list[tuple] = []
        self.fail_remove: set[tuple[str, str]] = set()
        self.fail_add: set[tuple[str, str]] = set()
        self.exec_returncode = 0

    def add_container(self, name: str, status: str = "RUNNING", devices: dict | None = None) -> None:
        self.containers[name] = {"status": status, "devices": dict(devices or {})}

    def devices(self, name: str) -> dict[str, dict]:
        return self.containers[name]["devices"]

    # Query operations

    def container_exists(self, name: str) -> bool:
        return name in self.containers

    def container_status(self, name: str) -> str | None:
        if name not in self.containers:
            return None
        return self.containers[name]["status"]

    def container_running(self, name: str) -> bool:
        return self.container_status(name) == "RUNNING"

    def list_containers(self) -> list[tuple[str, str]]:
        return [(name, c["status"]) for name, c in self.containers.items()]

    def list_devices(self, name: str) -> list[str]:
        if name not in self.containers:
            raise incus.IncusError(f"list devices of '{name}'", 1, "Instance not found")
        return list(self.devices(name))

    def get_device_option(self, name: str, device: str, key: str) -> str | None:
        return self.devices(name).get(device, {}).get(key)

    def snapshot_exists(self, name: str, snapshot: str) -> bool:
        return snapshot in self.snapshots.get(name, set())

    def profile_exists(self, profile: str) -> bool:
        return profile in self.profiles

    # Mutating operations

    def add_proxy_device(self, name: str, device: str, listen: str, connect: str) -> None:
        self.calls.append(("add_proxy_device", name, device, listen, connect))
        if (name, device) in self.fail_add or device in self.devices(name):
            raise incus.IncusError(f"add proxy device '{device}' to '{name}'", 1, "Device already exists")
        self.devices(name)[device] = {"type": "proxy", "listen": listen, "connect": connect}

    def add_disk_device(self, name: str, device: str, source: Path, path: str, readonly: bool = False) -> None:
        self.calls.append(("add_disk_device", name, device))
        self.devices(name)[device] = {"type": "disk", "source": str(source), "path": path}

    def remove_device(self, name: str, device: str) -> None:
        self.calls.append(("remove_device", name, device))
        if (name, device) in self.fail_remove or device not in self.devices(name):
            raise incus.IncusError(f"remove device '{device}' from '{name}'", 1, "Device doesn't exist")
        del self.devices(name)[device]

    def launch(self, name: str, image: str, profiles: list[str]) -> None:
        self.calls.append(("launch", name, image))
        self.add_container(name)

    def copy_snapshot(self, source: str, snapshot: str, name: str) -> None:
        self.calls.append(("copy_snapshot", source, snapshot, name))
        devices = {dev: dict(opts) for dev, opts in self.devices(source).items()}
        self.add_container(name, status="STOPPED", devices=devices)

    def start(self, name: str) -> None:
        self.calls.append(("start", name))
        self.containers[name]["status"] = "RUNNING"

    def stop(self, name: str) -> None:
        self.calls.append(("stop", name))
        self.containers[name]["status"] = "STOPPED"

    def delete(self, name: str, force: bool = False) -> None:
        self.calls.append(("delete", name, force))
        self.containers.pop(name, None)

    def push_file(self, name: str, source: Path, dest: str) -> None:
        self.calls.append(("push_file", name, dest))

    def exec_in(self, name: str, command: list[str], capture: bool = False) -> subprocess.CompletedProcess:
        self.calls.append(("exec_in", name, tuple(command)))
        returncode = self.exec_returncode if command[0] in ("bash", "su") else 0
        return subprocess.CompletedProcess(command, returncode, "", "")

    def create_profile(self, profile: str) -> None:
        self.profiles[profile] = {}

    def set_profile_option(self, profile: str, key: str, value: str) -> None:
        self.profiles[profile][key] = value


PATCHED_FUNCTIONS = [
    "container_exists",
    "container_status",
    "container_running",
    "list_containers",
    "list_devices",
    "get_device_option",
    "snapshot_exists",
    "profile_exists",
    "add_proxy_device",
    "add_disk_device",
    "remove_device",
    "launch",
    "copy_snapshot",
    "start",
    "stop",
    "delete",
    "push_file",
    "exec_in",
    "create_profile",
    "set_profile_option",
]


@pytest.fixture
def ocdev_home(tmp_path, monkeypatch):
    """Point HOME at a temporary directory and return the ~/.ocdev path."""
    monkeypatch.setenv("HOME", str(tmp_path))
    return tmp_path / ".ocdev"


@pytest.fixture
def fake_incus(monkeypatch):
    """Replace the incus module's operations with an in-memory fake."""
    fake = FakeIncus()
    for func in PATCHED_FUNCTIONS:
        monkeypatch.setattr(incus, func, getattr(fake, func))
    return fake


class LockRecorder:
    """Stands in for port_lock and records each scope.

    Scopes are stored as (exclusive, start, end), where start and end index
    into the FakeIncus call log, so tests can see which incus mutations ran
    under which lock.
    """

    def __init__(self, calls: list[tuple]):
        self.calls = calls
        self.scopes: list[tuple[bool, int, int]] = []

    @contextmanager
    def __call__(self, exclusive: bool = True):
        start = len(self.calls)
        try:
            yield
        finally:
            self.scopes.append((exclusive, start, len(self.calls)))

    @property
    def modes(self) -> list[bool]:
        return [exclusive for exclusive, _start, _end in self.scopes]

    def calls_in(self, index: int) -> list[tuple]:
        _exclusive, start, end = self.scopes[index]
        return self.calls[start:end]


@pytest.fixture
def lock_recorder(fake_incus, monkeypatch):
    """Record port_lock scopes taken by the cli and container modules."""
    recorder = LockRecorder(fake_incus.calls)
    monkeypatch.setattr("ocdev.cli.port_lock", recorder)
    monkeypatch.setattr("ocdev.container.port_lock", recorder)
    return recorder
