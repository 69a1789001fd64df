"""Prefixed status messages for ocdev commands."""

import click


def info(msg: str) -> None:
    """Print an informational message to stderr."""
    click.echo(f"[INFO] {msg}", err=True)


def warn(msg: str) -> None:
    """Print a warning to stderr."""
    click.echo(f"[WARN] {msg}", err=True)


def error(msg: str) -> None:
    """Print an error to stderr."""
    click.echo(f"[ERROR] {msg}", err=True)


def success(msg: str) -> None:
    """Print a success message to stdout."""
    click.echo(f"[OK] {msg}")
