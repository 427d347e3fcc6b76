"""Named cross-process counting semaphore and the permits taken from it.

Every cooperating process opens the same POSIX named semaphore. Nobody owns
it and normal operation never unlinks it.
"""

from __future__ import annotations

import logging
import weakref

import posix_ipc

from adpool.models import SemaphoreError

logger = logging.getLogger("adpool.semaphore")


class NamedSemaphore:
    """Handle on a POSIX named semaphore, created with value 0 if absent."""

    def __init__(self, name: str) -> None:
        self.name = name
        try:
            self._sem = posix_ipc.Semaphore(name, flags=posix_ipc.O_CREAT, initial_value=0)
        except (posix_ipc.Error, ValueError) as e:
            raise SemaphoreError(f"failed to open semaphore {name}: {e}") from e

    @property
    def value(self) -> int:
        try:
            return self._sem.value
        except AttributeError as e:
            raise SemaphoreError(
                f"semaphore {self.name}: reading the value is not supported on this platform"
            ) from e

    def acquire(self, timeout: float | None = None) -> Permit | None:
        """Take one permit, waiting up to timeout seconds (forever if None).

        Returns None if the wait timed out.
        """
        try:
            self._sem.acquire(timeout)
        except posix_ipc.BusyError:
            return None
        return Permit(self)

    def adjust_to(self, target: int) -> int:
        """Move the value to target by posting or taking permits.

        Must only be called while the ledger file lock is held. Returns the
        value before the adjustment.
        """
        value = self.value
        if value > target:
            logger.debug("semaphore %s: %d -> %d", self.name, value, target)
            for _ in range(value - target):
                try:
                    self._sem.acquire(0)
                except posix_ipc.BusyError:
                    # A permit was taken concurrently; the value is already lower.
                    break
        elif value < target:
            logger.debug("semaphore %s: %d -> %d", self.name, value, target)
            for _ in range(target - value):
                self._sem.release()
        else:
            logger.debug("semaphore %s: %d", self.name, value)
        return value

    def unlink(self) -> None:
        """Remove the name from the system. Open handles keep working."""
        try:
            self._sem.unlink()
        except posix_ipc.ExistentialError:
            pass

    def close(self) -> None:
        self._sem.close()

    def _post(self) -> None:
        self._sem.release()

    def __repr__(self) -> str:
        return f"NamedSemaphore({self.name!r})"


class Permit:
    """One unit of semaphore capacity.

    The permit goes back to the semaphore on release(), at the end of a
    ``with`` block, or when the permit is garbage collected, whichever comes
    first. Releasing twice is a no-op.
    """

    def __init__(self, semaphore: NamedSemaphore) -> None:
        self.semaphore_name = semaphore.name
        self._finalizer = weakref.finalize(self, semaphore._post)

    @property
    def released(self) -> bool:
        return not self._finalizer.alive

    def release(self) -> None:
        if self._finalizer.alive:
            logger.debug("returning permit to %s", self.semaphore_name)
            self._finalizer()

    def __enter__(self) -> Permit:
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "released" if self.released else "held"
        return f"Permit({self.semaphore_name!r}, {state})"
