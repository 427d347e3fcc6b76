"""Exclusive advisory lock on the ledger file."""

from __future__ import annotations

import fcntl
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import IO

from adpool.models import LockFileError
from adpool.pool.ledger import Ledger

logger = logging.getLogger("adpool.filelock")


@contextmanager
def lock_ledger_file(path: Path) -> Iterator[IO[str]]:
    """Open the ledger file and hold an exclusive flock for the block.

    Blocks until no other process holds the lock. The lock is dropped and
    the file closed on every exit path.
    """
    try:
        path.touch(exist_ok=True)
        f = open(path, "r+", encoding="utf-8")
    except OSError as e:
        raise LockFileError(path, e.strerror or str(e)) from e

    try:
        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
        except OSError as e:
            raise LockFileError(path, f"lock failed: {e.strerror or e}") from e
        logger.debug("locked %s", path)
        try:
            yield f
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)
            logger.debug("unlocked %s", path)
    finally:
        f.close()


def read_ledger(f: IO[str]) -> Ledger:
    """Read the whole ledger from a locked file."""
    f.seek(0)
    return Ledger.read(f)


def write_ledger(f: IO[str], ledger: Ledger) -> None:
    """Truncate the locked file and rewrite every record."""
    f.seek(0)
    f.truncate()
    ledger.write(f)
    f.flush()
    os.fsync(f.fileno())
