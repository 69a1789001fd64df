"""Port allocation and port argument parsing for ocdev containers.

Each container owns a base (SSH) port taken from a fixed grid starting at
SSH_PORT_START and stepping by PORTS_PER_VM. Its block of service ports is
derived from the base port and never stored.

Allocations live in ~/.ocdev/ports as ``name:port`` lines. Callers must hold
the exclusive port lock around allocate/save/remove.
"""

from pathlib import Path

from .config import (
    MAX_PORT,
    PORTS_PER_VM,
    SERVICE_PORT_START,
    SERVICE_PORTS_COUNT,
    SSH_PORT_START,
    get_ocdev_dir,
    get_ports_file,
)


class PortsExhaustedError(RuntimeError):
    """Raised when every base port slot up to MAX_PORT is allocated."""


class PortSpecError(ValueError):
    """Raised when a port argument cannot be parsed.

    ``reason`` is one of ``empty``, ``format``, ``not_integer`` or
    ``out_of_range``.
    """

    def __init__(self, message: str, reason: str):
        super().__init__(message)
        self.reason = reason


def _parse_record(line: str) -> tuple[str, int] | None:
    """Parse one ``name:port`` line, or return None if it is malformed."""
    parts = line.strip().split(":")
    if len(parts) < 2 or not parts[0]:
        return None
    try:
        return parts[0], int(parts[1])
    except ValueError:
        return None


def _read_lines(ports_file: Path) -> list[str]:
    if not ports_file.exists():
        return []
    return ports_file.read_text().splitlines()


def read_allocations() -> list[tuple[str, int]]:
    """Return every well-formed allocation record in file order.

    Malformed lines are skipped.
    """
    records = []
    for line in _read_lines(get_ports_file()):
        record = _parse_record(line)
        if record is not None:
            records.append(record)
    return records


def read_allocated_ports() -> set[int]:
    """Return the set of allocated base ports, skipping malformed lines."""
    return {port for _, port in read_allocations()}


def allocate_port() -> int:
    """Find the next free base port.

    Must be called while holding the exclusive port lock.

    Returns:
        The lowest free port of the form SSH_PORT_START + k * PORTS_PER_VM.

    Raises:
        PortsExhaustedError: If no slot up to MAX_PORT is free.
    """
    allocated = read_allocated_ports()
    port = SSH_PORT_START
    while port in allocated:
        port += PORTS_PER_VM
        if port > MAX_PORT:
            raise PortsExhaustedError(
                f"No available ports (all from {SSH_PORT_START} are allocated)"
            )
    return port


def save_port_allocation(name: str, port: int) -> None:
    """Append an allocation record for ``name``.

    Raises:
        OSError: If the state directory or the store cannot be written.
    """
    get_ocdev_dir().mkdir(parents=True, exist_ok=True)
    with open(get_ports_file(), "a") as f:
        f.write(f"{name}:{port}\n")


def remove_port_allocation(name: str) -> None:
    """Remove every allocation record for ``name``.

    Removing a name that is not present leaves the store untouched. If no
    records remain the file is truncated, not deleted.
    """
    ports_file = get_ports_file()
    if not ports_file.exists():
        return

    lines = _read_lines(ports_file)
    kept = [line for line in lines if not line.startswith(f"{name}:")]
    if len(kept) == len(lines):
        return

    ports_file.write_text("\n".join(kept) + "\n" if kept else "")


def get_port(name: str) -> int | None:
    """Return the base port allocated to ``name``, or None.

    The first line naming ``name`` wins; if that line is malformed the result
    is None.
    """
    for line in _read_lines(get_ports_file()):
        parts = line.strip().split(":")
        if len(parts) >= 2 and parts[0] == name:
            try:
                return int(parts[1])
            except ValueError:
                return None
    return None


def get_service_port_base(ssh_port: int) -> int:
    """Return the first service port for a base port.

    SSH 2200 maps to service base 2300, SSH 2210 to 2310, and so on.
    """
    return SERVICE_PORT_START + (ssh_port - SSH_PORT_START)


def get_service_port_range(ssh_port: int) -> tuple[int, int]:
    """Return the inclusive (first, last) service ports for a base port."""
    base = get_service_port_base(ssh_port)
    return base, base + SERVICE_PORTS_COUNT - 1


def _parse_port_number(value: str, label: str) -> int:
    # int() also takes signs, underscores and non-ASCII digits
    if not (value.isascii() and value.isdigit()):
        raise PortSpecError(f"Invalid {label} '{value}': not an integer", "not_integer")
    port = int(value)
    if not 1 <= port <= MAX_PORT:
        raise PortSpecError(
            f"Invalid {label} {port}: must be between 1 and {MAX_PORT}", "out_of_range"
        )
    return port


def parse_host_port(value: str) -> int:
    """Validate a single host port argument."""
    return _parse_port_number(value.strip(), "host port")


def parse_port_spec(spec: str) -> tuple[int, int]:
    """Parse a port argument.

    Args:
        spec: Either ``PORT`` (same port on both sides) or
            ``CONTAINER_PORT:HOST_PORT``.

    Returns:
        Tuple of (container_port, host_port).

    Raises:
        PortSpecError: If the argument is empty, has the wrong number of
            fields, is not numeric, or is outside 1-65535.
    """
    spec = spec.strip()
    if not spec:
        raise PortSpecError("Port cannot be empty", "empty")

    if ":" not in spec:
        port = _parse_port_number(spec, "port")
        return port, port

    parts = spec.split(":")
    if len(parts) != 2:
        raise PortSpecError(
            f"Invalid port '{spec}': expected PORT or CONTAINER_PORT:HOST_PORT", "format"
        )
    container_port = _parse_port_number(parts[0], "container port")
    host_port = _parse_port_number(parts[1], "host port")
    return container_port, host_port
