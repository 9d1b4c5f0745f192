"""Advisory inter-process lock around mutating update operations."""

from __future__ import annotations

import fcntl
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from pal.logging import get_logger

log = get_logger("pal.updater.lock")


class UpdateLockedError(RuntimeError):
    """Another pal process is already applying or rolling back an update."""


@contextmanager
def update_lock(path: Path) -> Iterator[None]:
    """Hold an exclusive, non-blocking ``flock`` on *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch(exist_ok=True)

    with open(path, "r+") as lock:
        try:
            fcntl.flock(lock, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            log.warning("update_lock_busy", path=str(path))
            raise UpdateLockedError(f"Another update is in progress ({path})") from exc
        try:
            yield
        finally:
            fcntl.flock(lock, fcntl.LOCK_UN)
