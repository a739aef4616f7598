"""
Install lock — one install run per formula at a time.

The lock is an ``flock`` on ``<home>/locks/<formula>.lock``. It is taken
non-blocking: a second run for the same formula fails immediately with
InstallLocked instead of waiting. The kernel drops the lock when the
holding process dies, so a stale lock file is harmless.
"""

from __future__ import annotations

import fcntl
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from formulary.core.errors import ConfigError, InstallLocked

logger = logging.getLogger(__name__)


@contextmanager
def install_lock(lock_dir: Path, key: str) -> Iterator[Path]:
    """Hold the exclusive lock for ``key`` for the duration of the block."""
    path = lock_dir / f"{key}.lock"
    try:
        lock_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_CREAT | os.O_RDWR, 0o644)
    except OSError as e:
        raise ConfigError(f"Cannot open install lock {path}: {e}", lock_file=str(path)) from e

    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            raise InstallLocked(
                f"Another install of '{key}' is in progress",
                formula=key,
                lock_file=str(path),
            ) from e

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        logger.debug("Acquired install lock %s", path)
        try:
            yield path
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Released install lock %s", path)
    finally:
        os.close(fd)
