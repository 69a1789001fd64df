"""Dynamic port bindings between the host and ocdev containers.

A dynamic binding is an incus proxy device named ``bind-<host_port>``. The
device name alone identifies the host port, so incus is the only record of
which bindings exist; nothing is stored locally. The static devices created
with every container (``ssh-proxy`` and ``svc-proxy-N``) are never treated as
bindings.

Mutating operations must run under the exclusive port lock. The lock
serializes ocdev invocations only; devices changed directly through incus are
not protected.
"""

import re
from dataclasses import dataclass

from . import incus
from .config import MAX_PORT
from .output import warn

DYNAMIC_BINDING_PREFIX = "bind-"
SSH_PROXY_DEVICE = "ssh-proxy"
SERVICE_PROXY_PREFIX = "svc-proxy-"

_SERVICE_PROXY_RE = re.compile(rf"^{SERVICE_PROXY_PREFIX}\d+$")


class AlreadyBoundError(RuntimeError):
    """Raised when a container already has a binding on the host port."""

    def __init__(self, container: str, host_port: int):
        self.container = container
        self.host_port = host_port
        super().__init__(f"Port {host_port} is already bound on '{container}'")


class NotBoundError(RuntimeError):
    """Raised when a container has no binding on the host port."""

    def __init__(self, container: str, host_port: int):
        self.container = container
        self.host_port = host_port
        super().__init__(f"Port {host_port} is not bound on '{container}'")


@dataclass(frozen=True)
class Binding:
    """A host port forwarded to a port inside a container."""

    host_port: int
    container_port: int
    owner: str


@dataclass(frozen=True)
class RebindResult:
    """Outcome of a rebind."""

    binding: Binding
    previous_owner: str | None = None
    unchanged: bool = False

    @property
    def moved(self) -> bool:
        """True if the binding was taken from another container."""
        return self.previous_owner is not None


def binding_device_name(host_port: int) -> str:
    """Return the device name used for a binding on ``host_port``."""
    return f"{DYNAMIC_BINDING_PREFIX}{host_port}"


def is_static_proxy_device(device: str) -> bool:
    """Check whether a device is one of the proxies created with the container."""
    return device == SSH_PROXY_DEVICE or bool(_SERVICE_PROXY_RE.match(device))


def parse_binding_device_name(device: str) -> int | None:
    """Return the host port encoded in a binding device name.

    Returns:
        The host port, or None if the device is not a dynamic binding.

    Raises:
        ValueError: If the device carries the binding prefix but no valid port.
    """
    if not device.startswith(DYNAMIC_BINDING_PREFIX):
        return None
    suffix = device[len(DYNAMIC_BINDING_PREFIX):]
    if not (suffix.isascii() and suffix.isdigit()):
        raise ValueError(f"Malformed binding device name '{device}'")
    port = int(suffix)
    if not 1 <= port <= MAX_PORT:
        raise ValueError(f"Binding device '{device}' has out-of-range port {port}")
    return port


def parse_connect_port(connect: str) -> int:
    """Extract the port from a proxy ``connect`` value such as ``tcp:127.0.0.1:5173``.

    Raises:
        ValueError: If the value is not ``scheme:address:port`` shaped.
    """
    parts = connect.strip().split(":")
    if len(parts) < 3:
        raise ValueError(f"Unrecognized connect target '{connect}'")
    port = int(parts[-1])
    if not 1 <= port <= MAX_PORT:
        raise ValueError(f"Connect target '{connect}' has out-of-range port {port}")
    return port


def list_bindings(container: str) -> list[Binding]:
    """Return the dynamic bindings of a container, sorted by host port.

    Devices with malformed names or connect targets are skipped with a
    warning, so one bad device does not hide the others.
    """
    bindings = []
    for device in incus.list_devices(container):
        if is_static_proxy_device(device):
            continue
        try:
            host_port = parse_binding_device_name(device)
        except ValueError as e:
            warn(f"Skipping device on '{container}': {e}")
            continue
        if host_port is None:
            continue

        connect = incus.get_device_option(container, device, "connect")
        if connect is None:
            warn(f"Skipping device '{device}' on '{container}': no connect target")
            continue
        try:
            container_port = parse_connect_port(connect)
        except ValueError as e:
            warn(f"Skipping device '{device}' on '{container}': {e}")
            continue

        bindings.append(Binding(host_port=host_port, container_port=container_port, owner=container))

    return sorted(bindings, key=lambda b: b.host_port)


def has_binding(container: str, host_port: int) -> bool:
    """Check whether the container holds a binding on ``host_port``."""
    return binding_device_name(host_port) in incus.list_devices(container)


def bind(container: str, host_port: int, container_port: int) -> Binding:
    """Forward ``host_port`` on the host to ``container_port`` in the container.

    Raises:
        AlreadyBoundError: If the container already binds ``host_port``.
        IncusError: If incus fails to add the device.
    """
    if has_binding(container, host_port):
        raise AlreadyBoundError(container, host_port)

    incus.add_proxy_device(
        container,
        binding_device_name(host_port),
        listen=f"tcp:0.0.0.0:{host_port}",
        connect=f"tcp:127.0.0.1:{container_port}",
    )
    return Binding(host_port=host_port, container_port=container_port, owner=container)


def unbind(container: str, host_port: int) -> None:
    """Remove the binding on ``host_port`` from the container.

    Raises:
        NotBoundError: If the container has no such binding.
        IncusError: If incus fails to remove the device.
    """
    if not has_binding(container, host_port):
        raise NotBoundError(container, host_port)
    incus.remove_device(container, binding_device_name(host_port))


def find_owner(host_port: int) -> str | None:
    """Return the ocdev container holding a binding on ``host_port``, or None.

    Queries every ocdev container in listing order; the first holder wins.
    """
    for name, _status in incus.list_containers():
        if has_binding(name, host_port):
            return name
    return None


def rebind(target: str, host_port: int, container_port: int) -> RebindResult:
    """Move the binding on ``host_port`` to ``target``, creating it if needed.

    The old binding is removed before the new one is added, so a failure never
    leaves two containers bound to the same host port. A crash between the two
    steps leaves the port unbound everywhere; incus has no transaction that
    would cover both devices.

    Raises:
        IncusError: If removing the old binding or adding the new one fails.
            When the removal fails, no new binding is attempted.
    """
    if has_binding(target, host_port):
        existing = next((b for b in list_bindings(target) if b.host_port == host_port), None)
        binding = existing or Binding(host_port=host_port, container_port=container_port, owner=target)
        return RebindResult(binding=binding, unchanged=True)

    previous_owner = find_owner(host_port)
    if previous_owner is not None:
        unbind(previous_owner, host_port)

    binding = bind(target, host_port, container_port)
    return RebindResult(binding=binding, previous_owner=previous_owner)


def list_all_bindings() -> list[Binding]:
    """Return the dynamic bindings of every ocdev container.

    A container whose devices cannot be read is skipped with a warning.
    """
    bindings = []
    for name, _status in incus.list_containers():
        try:
            bindings.extend(list_bindings(name))
        except incus.IncusError as e:
            warn(f"Skipping '{name}': {e}")
    return bindings


def remove_dynamic_bindings(container: str) -> list[int]:
    """Remove every dynamic binding device from a container.

    Used on containers copied from a snapshot, which inherit the source's
    bindings. Failures are reported as warnings.

    Returns:
        The host ports whose bindings were removed.
    """
    removed = []
    for device in incus.list_devices(container):
        if is_static_proxy_device(device) or not device.startswith(DYNAMIC_BINDING_PREFIX):
            continue
        try:
            incus.remove_device(container, device)
        except incus.IncusError as e:
            warn(f"Could not remove inherited binding '{device}': {e}")
            continue
        try:
            host_port = parse_binding_device_name(device)
        except ValueError:
            continue
        if host_port is not None:
            removed.append(host_port)
    return removed
