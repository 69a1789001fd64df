"""Container lifecycle for ocdev: create, start, stop, delete."""

import grp
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

from . import incus
from .bindings import SERVICE_PROXY_PREFIX, SSH_PROXY_DEVICE, is_static_proxy_device, remove_dynamic_bindings
from .config import (
    MAX_NAME_LENGTH,
    PROFILE_NAME,
    SERVICE_PORTS_COUNT,
    OcdevConfig,
    get_ocdev_dir,
    get_ports_file,
)
from .lock import port_lock
from .output import info, warn
from .ports import (
    allocate_port,
    get_port,
    get_service_port_base,
    get_service_port_range,
    read_allocated_ports,
    remove_port_allocation,
    save_port_allocation,
)
from .provision import POST_INSTALL_SCRIPT, get_provision_script

INCUS_ADMIN_GROUP = "incus-admin"

# (device name, path under $HOME, path in container, readonly)
HOST_MOUNTS = [
    ("host-config", ".config", "/home/dev/.config", False),
    ("host-opencode", ".opencode", "/home/dev/.opencode", False),
    ("host-ssh", ".ssh", "/home/dev/.ssh", True),
    ("host-gitconfig", ".gitconfig", "/home/dev/.gitconfig", True),
]

PROFILE_OPTIONS = {
    "security.nesting": "true",
    "security.syscalls.intercept.mknod": "true",
    "security.syscalls.intercept.setxattr": "true",
}


class PrerequisiteError(RuntimeError):
    """Raised when incus is missing or the user cannot use it."""


class ContainerExistsError(RuntimeError):
    """Raised when creating a container whose name is taken."""


class ContainerNotFoundError(RuntimeError):
    """Raised when a named container does not exist."""


class PortConflictError(RuntimeError):
    """Raised when another invocation claimed the allocated port during create."""


@dataclass
class CreatedContainer:
    """Result of a successful create."""

    name: str
    ssh_port: int
    service_ports: tuple[int, int]
    post_create_failed: bool = False


def validate_name(name: str) -> None:
    """Validate a container name.

    Names must be 1-50 characters, start with a letter and contain only
    ASCII letters, digits and hyphens.

    Raises:
        ValueError: Describing the first rule the name breaks.
    """
    if not name:
        raise ValueError("Name cannot be empty")
    if len(name) > MAX_NAME_LENGTH:
        raise ValueError(f"Name too long (max {MAX_NAME_LENGTH} chars)")
    if not (name[0].isascii() and name[0].isalpha()):
        raise ValueError("Name must start with a letter")
    for c in name:
        if not (c.isascii() and (c.isalnum() or c == "-")):
            raise ValueError("Name can only contain alphanumeric characters and hyphens")


def parse_snapshot_ref(ref: str) -> tuple[str, str]:
    """Parse a ``container/snapshot`` reference.

    Raises:
        ValueError: If the reference is malformed or the container name is invalid.
    """
    if ref.count("/") != 1:
        raise ValueError(f"Invalid snapshot '{ref}': expected CONTAINER/SNAPSHOT")
    source, snapshot = ref.split("/")
    if not snapshot:
        raise ValueError(f"Invalid snapshot '{ref}': snapshot name cannot be empty")
    validate_name(source)
    return source, snapshot


def check_prerequisites() -> None:
    """Check that incus is usable and the state directory exists.

    Raises:
        PrerequisiteError: If incus is not installed or the user is not in the
            incus-admin group.
    """
    if shutil.which(incus.get_command()) is None:
        raise PrerequisiteError("incus not found. Please install Incus.")

    try:
        admin_gid = grp.getgrnam(INCUS_ADMIN_GROUP).gr_gid
    except KeyError:
        raise PrerequisiteError(f"Group '{INCUS_ADMIN_GROUP}' does not exist. Is Incus installed?")
    if admin_gid not in os.getgroups() and admin_gid != os.getgid():
        raise PrerequisiteError(f"User not in {INCUS_ADMIN_GROUP} group.")

    get_ocdev_dir().mkdir(parents=True, exist_ok=True)
    get_ports_file().touch(exist_ok=True)


def ensure_profile() -> None:
    """Create the ocdev incus profile if it doesn't exist.

    The profile enables nesting and syscall interception so Docker can run
    inside the container.
    """
    if incus.profile_exists(PROFILE_NAME):
        return
    info("Creating ocdev profile...")
    incus.create_profile(PROFILE_NAME)
    for key, value in PROFILE_OPTIONS.items():
        incus.set_profile_option(PROFILE_NAME, key, value)


def add_host_mounts(name: str, home: Path | None = None) -> None:
    """Mount the user's config, SSH keys and git config into the container.

    Only paths that exist on the host are mounted. Devices already present
    (e.g. inherited from a snapshot) are left alone.
    """
    home = home or Path.home()
    existing = set(incus.list_devices(name))
    for device, relative, target, readonly in HOST_MOUNTS:
        source = home / relative
        if source.exists() and device not in existing:
            incus.add_disk_device(name, device, source, target, readonly=readonly)


def add_static_proxies(name: str, ssh_port: int) -> None:
    """Add the SSH proxy and the service port proxies."""
    info(f"Configuring SSH proxy on port {ssh_port}...")
    incus.add_proxy_device(name, SSH_PROXY_DEVICE, f"tcp:0.0.0.0:{ssh_port}", "tcp:127.0.0.1:22")

    service_base = get_service_port_base(ssh_port)
    first, last = get_service_port_range(ssh_port)
    info(f"Configuring service ports {first}-{last}...")
    for i in range(SERVICE_PORTS_COUNT):
        port = service_base + i
        incus.add_proxy_device(
            name, f"{SERVICE_PROXY_PREFIX}{i}", f"tcp:0.0.0.0:{port}", f"tcp:127.0.0.1:{port}"
        )


def remove_inherited_proxies(name: str) -> None:
    """Strip the proxies a snapshot copy inherits from its source.

    The copy would otherwise listen on the source container's ports.
    """
    for device in incus.list_devices(name):
        if is_static_proxy_device(device):
            incus.remove_device(name, device)
    removed = remove_dynamic_bindings(name)
    if removed:
        info(f"Removed inherited bindings: {', '.join(str(p) for p in removed)}")


def _push_script(name: str, script: str, dest: str) -> None:
    with tempfile.NamedTemporaryFile("w", prefix="ocdev-", suffix=".sh", delete=False) as f:
        f.write(script)
        tmp_path = Path(f.name)
    try:
        incus.push_file(name, tmp_path, dest)
    finally:
        tmp_path.unlink(missing_ok=True)


def provision(name: str) -> None:
    """Run the provisioning script as root inside the container.

    Raises:
        IncusError: If the script fails.
    """
    info("Provisioning container (this may take a few minutes)...")
    _push_script(name, get_provision_script(os.getuid()), "/tmp/provision.sh")
    result = incus.exec_in(name, ["bash", "/tmp/provision.sh"])
    incus.exec_in(name, ["rm", "-f", "/tmp/provision.sh"])
    if result.returncode != 0:
        raise incus.IncusError("provision container", result.returncode)


def run_post_create(name: str, script: Path | None, install_tools: bool = False) -> bool:
    """Run the post-create script as the dev user.

    Failures only produce warnings, so the caller always goes on to record
    the container's port allocation.

    Returns:
        True if the script succeeded (or there was nothing to run). On failure
        the script is left in the container for debugging.
    """
    if script is None and not install_tools:
        return True

    dest = "/tmp/ocdev-post-create.sh"
    info("Running post-create script...")
    try:
        if script is not None:
            incus.push_file(name, script, dest)
        else:
            _push_script(name, POST_INSTALL_SCRIPT, dest)
    except incus.IncusError as e:
        warn(f"Could not copy post-create script: {e}")
        warn(f"Debug with: ocdev shell {name}")
        return False
    incus.exec_in(name, ["chmod", "+x", dest])

    result = incus.exec_in(name, ["su", "-", "dev", "-c", dest])
    if result.returncode != 0:
        warn("Post-create script failed (container kept for debugging)")
        warn(f"Script left at {dest} inside container")
        warn(f"Debug with: ocdev shell {name}")
        return False

    incus.exec_in(name, ["rm", "-f", dest])
    return True


def _cleanup_failed_create(name: str) -> None:
    warn("Cleaning up failed container...")
    try:
        incus.delete(name, force=True)
    except incus.IncusError as e:
        warn(f"Cleanup failed: {e}")


def create_container(
    name: str,
    config: OcdevConfig,
    post_create: Path | None = None,
    from_snapshot: str | None = None,
    install_tools: bool = False,
) -> CreatedContainer:
    """Create and provision a development container.

    The port is allocated under the exclusive lock, but the allocation record
    is only written once the container is fully configured. If anything fails
    before then, the partially created container is force-deleted.

    Args:
        name: Container name (without the ocdev- prefix).
        config: User configuration.
        post_create: Script to run as the dev user after provisioning.
        from_snapshot: ``container/snapshot`` to copy instead of launching a
            fresh image. Provisioning is skipped for copies.
        install_tools: Run the bundled tool installer when no post-create
            script is given.

    Raises:
        ValueError: If the name, snapshot reference or script is invalid.
        ContainerExistsError: If the container already exists.
        ContainerNotFoundError: If the snapshot source does not exist.
        PortsExhaustedError: If no port slot is free.
        PortConflictError: If another invocation took the port meanwhile.
        IncusError: If an incus operation fails.
    """
    validate_name(name)

    post_create = post_create or config.post_create
    if post_create is not None:
        if not post_create.is_file():
            raise ValueError(f"Post-create script not found: {post_create}")
        if not os.access(post_create, os.R_OK):
            raise ValueError(f"Post-create script not readable: {post_create}")

    snapshot_ref = parse_snapshot_ref(from_snapshot) if from_snapshot else None
    if snapshot_ref is not None:
        source, snapshot = snapshot_ref
        if not incus.container_exists(source):
            raise ContainerNotFoundError(f"Source container '{source}' not found")
        if not incus.snapshot_exists(source, snapshot):
            raise ContainerNotFoundError(f"Snapshot '{snapshot}' not found on '{source}'")

    if incus.container_exists(name):
        raise ContainerExistsError(f"Container '{name}' already exists")

    ensure_profile()

    with port_lock(exclusive=True):
        ssh_port = allocate_port()

    try:
        if snapshot_ref is not None:
            source, snapshot = snapshot_ref
            info(f"Creating container '{name}' from {source}/{snapshot} with SSH port {ssh_port}...")
            incus.copy_snapshot(source, snapshot, name)
            remove_inherited_proxies(name)
        else:
            info(f"Creating container '{name}' with SSH port {ssh_port}...")
            incus.launch(name, config.base_image, ["default", PROFILE_NAME])

        if config.mount_host_dirs:
            info("Configuring disk mounts...")
            add_host_mounts(name)

        add_static_proxies(name, ssh_port)

        if snapshot_ref is not None:
            incus.start(name)
        else:
            provision(name)
    except Exception:
        _cleanup_failed_create(name)
        raise

    post_create_ok = run_post_create(name, post_create, install_tools=install_tools)

    with port_lock(exclusive=True):
        if ssh_port in read_allocated_ports() and get_port(name) != ssh_port:
            _cleanup_failed_create(name)
            raise PortConflictError(
                f"Port {ssh_port} was allocated to another container during create"
            )
        remove_port_allocation(name)
        save_port_allocation(name, ssh_port)

    return CreatedContainer(
        name=name,
        ssh_port=ssh_port,
        service_ports=get_service_port_range(ssh_port),
        post_create_failed=not post_create_ok,
    )


def require_container(name: str) -> None:
    """Raise ContainerNotFoundError unless the container exists."""
    if not incus.container_exists(name):
        raise ContainerNotFoundError(f"Container '{name}' not found")


def start_container(name: str) -> bool:
    """Start a container.

    Returns:
        False if it was already running, True if it was started.
    """
    require_container(name)
    if incus.container_running(name):
        return False
    incus.start(name)
    return True


def stop_container(name: str) -> bool:
    """Stop a container.

    Returns:
        False if it was already stopped, True if it was stopped.
    """
    require_container(name)
    if not incus.container_running(name):
        return False
    incus.stop(name)
    return True


def delete_container(name: str) -> None:
    """Stop and delete a container and release its port allocation.

    Incus discards the container's devices, including dynamic bindings.
    """
    require_container(name)
    if incus.container_running(name):
        info("Stopping container...")
        incus.stop(name)
    incus.delete(name)

    with port_lock(exclusive=True):
        remove_port_allocation(name)


def ssh_info(name: str, ssh_port: int) -> str:
    """Return SSH connection instructions for a container."""
    first, last = get_service_port_range(ssh_port)
    return "\n".join([
        "SSH:",
        f"  ssh -p {ssh_port} dev@localhost",
        "",
        "Service ports:",
        f"  {first}-{last} -> container {first}-{last}",
        "",
        "SSH config (~/.ssh/config):",
        "",
        f"Host {name}",
        "    HostName localhost",
        f"    Port {ssh_port}",
        "    User dev",
    ])
