"""Command-line interface for ocdev."""

import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import click

from . import __version__, incus
from .bindings import (
    AlreadyBoundError,
    NotBoundError,
    bind,
    list_all_bindings,
    list_bindings,
    rebind,
    unbind,
)
from .config import ExitCode, load_config
from .container import (
    ContainerNotFoundError,
    PrerequisiteError,
    check_prerequisites,
    create_container,
    delete_container,
    require_container,
    ssh_info,
    start_container,
    stop_container,
    validate_name,
)
from .lock import port_lock
from .output import error, info, success, warn
from .ports import PortSpecError, get_port, get_service_port_range, parse_host_port, parse_port_spec, read_allocations
from .table import draw_table


class CommandError(click.ClickException):
    """A user-facing command failure with a specific exit code."""

    def __init__(self, message: str, exit_code: int = ExitCode.ERROR):
        super().__init__(message)
        self.exit_code = int(exit_code)

    def show(self, file=None) -> None:
        error(self.format_message())


class PortSpecParam(click.ParamType):
    """PORT or CONTAINER_PORT:HOST_PORT, converted to (container_port, host_port)."""

    name = "port"

    def convert(self, value, param, ctx):
        if isinstance(value, tuple):
            return value
        try:
            return parse_port_spec(value)
        except PortSpecError as e:
            self.fail(str(e), param, ctx)


class HostPortParam(click.ParamType):
    """A single host port in 1-65535."""

    name = "host_port"

    def convert(self, value, param, ctx):
        if isinstance(value, int):
            return value
        try:
            return parse_host_port(value)
        except PortSpecError as e:
            self.fail(str(e), param, ctx)


PORT_SPEC = PortSpecParam()
HOST_PORT = HostPortParam()


@contextmanager
def command_errors() -> Iterator[None]:
    """Turn library exceptions into CommandErrors with the matching exit code."""
    try:
        yield
    except PrerequisiteError as e:
        raise CommandError(str(e), ExitCode.PREREQ) from e
    except ContainerNotFoundError as e:
        raise CommandError(str(e), ExitCode.NOT_FOUND) from e
    except (ValueError, RuntimeError, OSError) as e:
        raise CommandError(str(e)) from e


def _validated(name: str) -> str:
    try:
        validate_name(name)
    except ValueError as e:
        raise CommandError(f"Invalid name: {e}") from e
    return name


@click.group()
@click.version_option(version=__version__, prog_name="ocdev")
def cli():
    """ocdev - Isolated development environments using Incus containers."""
    incus.configure(load_config().incus_command)


# --- Container lifecycle ---


@cli.command("create")
@click.argument("name")
@click.option("--post-create", type=click.Path(path_type=Path), default=None, help="Script to run as the dev user after creation")
@click.option("--from-snapshot", default=None, metavar="CONTAINER/SNAPSHOT", help="Create from an existing snapshot")
@click.option("--install-tools", is_flag=True, help="Install uv, nvm and OpenCode when no post-create script is given")
def cmd_create(name, post_create, from_snapshot, install_tools):
    """Create a new development container."""
    _validated(name)
    with command_errors():
        check_prerequisites()
        created = create_container(
            name,
            load_config(),
            post_create=post_create,
            from_snapshot=from_snapshot,
            install_tools=install_tools,
        )

    first, last = created.service_ports
    success(f"Container '{name}' created (SSH: {created.ssh_port}, Services: {first}-{last})")


@cli.command("list")
def cmd_list():
    """List all ocdev containers."""
    with command_errors():
        check_prerequisites()
        containers = incus.list_containers()
        with port_lock(exclusive=False):
            rows = []
            for name, status in containers:
                port = get_port(name)
                rows.append({"NAME": name, "STATUS": status, "SSH PORT": str(port) if port else "N/A"})

    draw_table(rows, ["NAME", "STATUS", "SSH PORT"], empty_message="No containers found.")


@cli.command("start")
@click.argument("name")
def cmd_start(name):
    """Start a stopped container."""
    _validated(name)
    with command_errors():
        check_prerequisites()
        started = start_container(name)

    if started:
        success(f"Container '{name}' started")
    else:
        info(f"Container '{name}' is already running")


@cli.command("stop")
@click.argument("name")
def cmd_stop(name):
    """Stop a running container."""
    _validated(name)
    with command_errors():
        check_prerequisites()
        stopped = stop_container(name)

    if stopped:
        success(f"Container '{name}' stopped")
    else:
        info(f"Container '{name}' is already stopped")


@cli.command("shell")
@click.argument("name")
def cmd_shell(name):
    """Open an interactive shell in a container."""
    _validated(name)
    with command_errors():
        check_prerequisites()
        require_container(name)
        if not incus.container_running(name):
            raise CommandError(
                f"Container '{name}' is not running. Use 'ocdev start {name}' first.",
                ExitCode.NOT_RUNNING,
            )
        result = incus.exec_in(name, ["su", "--login", "dev"])
    raise SystemExit(result.returncode)


@cli.command("ssh")
@click.argument("name")
def cmd_ssh(name):
    """Display SSH connection info."""
    _validated(name)
    with command_errors():
        check_prerequisites()
        require_container(name)
        with port_lock(exclusive=False):
            port = get_port(name)

    if port is None:
        raise CommandError(f"No SSH port found for '{name}'")
    click.echo(ssh_info(name, port))


@cli.command("delete")
@click.argument("name")
def cmd_delete(name):
    """Delete a container and free its ports."""
    _validated(name)
    with command_errors():
        check_prerequisites()
        delete_container(name)
    success(f"Container '{name}' deleted")


@cli.command("ports")
def cmd_ports():
    """List all port allocations."""
    with command_errors():
        check_prerequisites()
        rows = []
        with port_lock(exclusive=False):
            for name, port in read_allocations():
                status = incus.container_status(name) or "DELETED"
                first, last = get_service_port_range(port)
                rows.append({"NAME": name, "SSH": str(port), "SERVICES": f"{first}-{last}", "STATUS": status})

    draw_table(rows, ["NAME", "SSH", "SERVICES", "STATUS"], empty_message="No port allocations.")


# --- Dynamic port bindings ---


@cli.command("bind")
@click.argument("name")
@click.argument("port", type=PORT_SPEC, required=False)
@click.option("-l", "--list", "list_only", is_flag=True, help="List current dynamic port bindings")
def cmd_bind(name, port, list_only):
    """Bind a container port to the host (PORT or CONTAINER_PORT:HOST_PORT)."""
    _validated(name)
    if not list_only and port is None:
        raise click.UsageError("Missing PORT (or use --list)")

    with command_errors():
        check_prerequisites()
        require_container(name)

        if list_only:
            bindings = list_bindings(name)
        else:
            container_port, host_port = port
            with port_lock(exclusive=True):
                try:
                    binding = bind(name, host_port, container_port)
                except AlreadyBoundError as e:
                    raise CommandError(f"{e}. Use 'ocdev unbind {name} {host_port}' first.") from e

    if list_only:
        rows = [{"HOST PORT": str(b.host_port), "CONTAINER PORT": str(b.container_port)} for b in bindings]
        draw_table(rows, ["HOST PORT", "CONTAINER PORT"], empty_message=f"No dynamic bindings on '{name}'.")
        return

    success(f"Bound host port {binding.host_port} -> '{name}' port {binding.container_port}")


@cli.command("unbind")
@click.argument("name")
@click.argument("port", type=HOST_PORT)
def cmd_unbind(name, port):
    """Remove a port binding."""
    _validated(name)
    with command_errors():
        check_prerequisites()
        require_container(name)
        with port_lock(exclusive=True):
            try:
                unbind(name, port)
            except NotBoundError as e:
                raise CommandError(str(e)) from e
    success(f"Unbound host port {port} from '{name}'")


@cli.command("rebind")
@click.argument("name")
@click.argument("port", type=PORT_SPEC)
def cmd_rebind(name, port):
    """Move a port binding to a different container."""
    _validated(name)
    container_port, host_port = port
    with command_errors():
        check_prerequisites()
        require_container(name)
        with port_lock(exclusive=True):
            result = rebind(name, host_port, container_port)

    if result.unchanged:
        info(f"Host port {host_port} is already bound to '{name}'")
    elif result.moved:
        success(f"Moved host port {host_port} from '{result.previous_owner}' to '{name}' port {container_port}")
    else:
        success(f"Bound host port {host_port} -> '{name}' port {container_port}")


@cli.command("bindings")
def cmd_bindings():
    """List all dynamic port bindings across containers."""
    with command_errors():
        check_prerequisites()
        bindings = list_all_bindings()

    rows = [
        {"CONTAINER": b.owner, "HOST PORT": str(b.host_port), "CONTAINER PORT": str(b.container_port)}
        for b in bindings
    ]
    draw_table(rows, ["CONTAINER", "HOST PORT", "CONTAINER PORT"], empty_message="No dynamic bindings.")


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    try:
        cli(args=argv, standalone_mode=False)
        return 0
    except click.ClickException as e:
        e.show()
        return e.exit_code
    except click.Abort:
        warn("Aborted")
        return ExitCode.ERROR
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else 0


if __name__ == "__main__":
    sys.exit(main())
