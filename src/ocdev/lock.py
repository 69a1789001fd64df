"""Advisory file locking for the port allocation store and bindings.

All ocdev invocations share one lock file. Mutations of the allocation store
and of dynamic bindings take the lock exclusively; read-only listings of the
store take it shared. The lock only serializes ocdev against itself; it does
not stop anyone from changing Incus devices directly.
"""

import fcntl
import os
from collections.abc import Iterator
from contextlib import contextmanager

from .config import get_lock_file


@contextmanager
def port_lock(exclusive: bool = True) -> Iterator[None]:
    """Hold the ocdev lock for the duration of the block.

    Blocks until the lock is available. The lock is released when the block
    exits, whether or not it raised.

    Args:
        exclusive: Take an exclusive lock (mutations) instead of a shared one
            (read-only listings).

    Raises:
        OSError: If the lock file cannot be created, opened or locked.
    """
    lock_file = get_lock_file()
    try:
        lock_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(lock_file, os.O_CREAT | os.O_RDWR, 0o644)
    except OSError as e:
        raise OSError(f"Cannot open lock file {lock_file}: {e}") from e

    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
        except OSError as e:
            raise OSError(f"Cannot acquire lock on {lock_file}: {e}") from e
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)
