"""Device pool allocation across independent processes.

There is no broker. Processes coordinate through two shared primitives:

- the ledger file, read and rewritten only under an exclusive flock
- a named counting semaphore whose value mirrors the ledger's free slots

A claim pass holds the file lock for a bounded amount of work (read,
reconcile against attached devices, claim, prune dead holders, reconcile the
semaphore, persist). Waiting for a permit always happens after the lock is
dropped, so a waiting process never keeps a releasing process out of the
ledger.
"""

from __future__ import annotations

import logging
import os

from adpool.config import PoolConfig
from adpool.device.boot import wait_for_boot
from adpool.device.runtime import Runtime
from adpool.models import DEFAULT_BOOT_PROPERTIES, PoolStatus, SemaphoreError
from adpool.pool.filelock import lock_ledger_file, read_ledger, write_ledger
from adpool.pool.ledger import Ledger
from adpool.pool.semaphore import NamedSemaphore, Permit

logger = logging.getLogger("adpool.pool")


class Resource:
    """A claimed device serial and the permit taken for it.

    release() frees the ledger slot and returns the permit. Leaving a
    ``with`` block, or dropping the object, only returns the permit; the slot
    stays held until release() or until a later pass finds the holder dead.
    """

    def __init__(self, pool: DevicePool, serial: str, pid: int, permit: Permit) -> None:
        self.serial = serial
        self.pid = pid
        self.permit = permit
        self._pool = pool
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def wait_for_ready(self) -> None:
        self._pool.wait_for_ready(self.serial)

    def release(self) -> None:
        """Free the slot in the ledger and return the permit. Idempotent."""
        if self._released:
            return
        try:
            self._pool.release_device(self.serial, permit=self.permit)
            self._released = True
        finally:
            self.permit.release()

    def close(self) -> None:
        self.permit.release()

    def __enter__(self) -> Resource:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Resource(serial={self.serial!r}, pid={self.pid}, permit={self.permit!r})"


class DevicePool:
    """Hands out one attached device at a time to each caller process."""

    def __init__(
        self,
        runtime: Runtime,
        config: PoolConfig | None = None,
        semaphore: NamedSemaphore | None = None,
    ) -> None:
        self.runtime = runtime
        self.config = config or PoolConfig()
        self.semaphore = semaphore or NamedSemaphore(self.config.semaphore_name)
        self.lock_file = self.config.lock_file
        self.boot_properties = DEFAULT_BOOT_PROPERTIES

    # ----------------------------------------------------------------
    # Public API
    # ----------------------------------------------------------------

    def acquire(self, pid: int | None = None) -> Resource:
        """Claim a device for pid and wait for it to finish booting.

        Blocks until a device is free. If the device never becomes ready
        the claim is released and the BootTimeoutError propagates.
        """
        if pid is None:
            pid = os.getpid()
        resource = self.claim(pid)
        try:
            resource.wait_for_ready()
        except Exception:
            resource.release()
            raise
        return resource

    def claim(self, pid: int) -> Resource:
        """Claim a device for pid without checking boot state."""
        while True:
            serial = self._try_claim(pid)
            if serial is not None:
                permit = self._take_permit()
                logger.info("Device claimed: %s by pid %d", serial, pid)
                return Resource(self, serial, pid, permit)
            logger.debug("No device free for pid %d, waiting", pid)
            self._wait_for_release()

    def release_device(self, serial: str, permit: Permit | None = None) -> None:
        """Mark serial free in the ledger.

        With a permit, the permit is returned while the lock is still held.
        Without one (a forced release), the semaphore is reconciled to the
        new free count instead.
        """
        with lock_ledger_file(self.lock_file) as f:
            ledger = read_ledger(f)
            holder = ledger.holder(serial)
            ledger.release(serial)
            write_ledger(f, ledger)
            if permit is not None:
                permit.release()
            else:
                self.semaphore.adjust_to(ledger.count_available())
        logger.info("Device released: %s (was held by %s)", serial, holder)

    def wait_for_ready(self, serial: str) -> None:
        wait_for_boot(
            self.runtime,
            serial,
            self.boot_properties,
            attempts=self.config.boot_attempts,
            interval=self.config.boot_interval,
        )

    def status(self) -> PoolStatus:
        """Snapshot of the persisted ledger and the semaphore value."""
        with lock_ledger_file(self.lock_file) as f:
            ledger = read_ledger(f)
        try:
            value = self.semaphore.value
        except SemaphoreError:
            value = None
        return PoolStatus(
            lock_file=str(self.lock_file),
            semaphore=self.semaphore.name,
            semaphore_value=value,
            available=ledger.count_available(),
            entries=ledger.entries(),
        )

    # ----------------------------------------------------------------
    # Claim protocol
    # ----------------------------------------------------------------

    def _try_claim(self, pid: int) -> str | None:
        """Run one locked pass. Returns the claimed serial, or None."""
        # adb may wait for a device to attach; keep that outside the lock.
        serials = self.runtime.devices()
        logger.debug("attached devices: %s", ",".join(serials))

        with lock_ledger_file(self.lock_file) as f:
            ledger = read_ledger(f)
            ledger.update(serials)

            available = ledger.count_available()
            serial = ledger.acquire(pid)
            if serial is None:
                stale = self._stale_serials(ledger)
                ledger.release_all(stale)
                available = ledger.count_available()
                serial = ledger.acquire(pid)

            logger.debug("pid %d claimed %s, ledger %s", pid, serial, ledger)

            # available still counts the permit this pid is about to take.
            self.semaphore.adjust_to(available)

            if serial is not None:
                write_ledger(f, ledger)
        return serial

    def _stale_serials(self, ledger: Ledger) -> list[str]:
        """Serials whose recorded holder is no longer running."""
        stale = []
        for serial, holder in ledger.unavailable():
            if not self.runtime.is_running(holder):
                logger.info("Releasing stale claim: %s held by dead pid %d", serial, holder)
                stale.append(serial)
        return stale

    def _take_permit(self) -> Permit:
        """Block until the permit for a persisted claim is available.

        Called without the file lock. If another pass counted our permit
        away before we took it, the wait times out and the permit is put
        back under the lock.
        """
        while True:
            permit = self.semaphore.acquire(self.config.retry_interval)
            if permit is not None:
                return permit
            with lock_ledger_file(self.lock_file) as f:
                ledger = read_ledger(f)
                self.semaphore.adjust_to(ledger.count_available() + 1)

    def _wait_for_release(self) -> None:
        """Sleep until some holder returns a permit, or retry_interval passes.

        A permit taken here is handed straight back; the next pass decides
        who actually gets the device.
        """
        permit = self.semaphore.acquire(self.config.retry_interval)
        if permit is not None:
            permit.release()
