"""Advisory file locks shared by the event log and dataset storage."""

from __future__ import annotations

import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

try:
    import fcntl
except ImportError:  # Windows
    fcntl = None
    print("[dataport] fcntl not available; file locking disabled", file=sys.stderr)


@contextmanager
def locked_fd(path: Path, flags: int, *, shared: bool = False) -> Iterator[int]:
    """Open *path* and hold a ``flock`` on it for the duration of the block.

    ``flock`` locks belong to the open file description, so two opens of the
    same file conflict even inside one process.

    Args:
        path: File to open.
        flags: ``os.open`` flags.
        shared: Take a shared lock instead of an exclusive one.

    Yields:
        The open file descriptor.
    """
    fd = os.open(str(path), flags, 0o644)
    try:
        if fcntl is not None:
            fcntl.flock(fd, fcntl.LOCK_SH if shared else fcntl.LOCK_EX)
        yield fd
    finally:
        if fcntl is not None:
            fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)
