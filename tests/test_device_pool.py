"""Unit tests for device pool claim/release across pool instances."""

from __future__ import annotations

import gc
import os
import queue
import threading
import uuid
from unittest.mock import MagicMock

import pytest

from adpool.config import PoolConfig
from adpool.device.runtime import InMemoryRuntime, Runtime
from adpool.models import BootTimeoutError, DeviceError, LedgerEntry, LedgerParseError
from adpool.pool.allocator import DevicePool, Resource
from adpool.pool.semaphore import NamedSemaphore


@pytest.fixture
def sem_name():
    name = f"/adpool-test-{uuid.uuid4().hex[:12]}"
    yield name
    NamedSemaphore(name).unlink()


@pytest.fixture
def config(tmp_path, sem_name):
    return PoolConfig(
        runtime_dir=tmp_path,
        semaphore_name=sem_name,
        boot_interval=0.0,
        retry_interval=0.05,
    )


@pytest.fixture
def sem(sem_name):
    """Separate handle on the pool's semaphore, for inspecting its value."""
    return NamedSemaphore(sem_name)


@pytest.fixture
def lock_file(config):
    return config.lock_file


def _pool(config: PoolConfig, *serials: str, processes=()) -> DevicePool:
    runtime = InMemoryRuntime(device_serials=list(serials), processes=set(processes))
    return DevicePool(runtime, config)


class TestAcquireRelease:
    """Single-process acquire and release."""

    def test_single_device_first_time(self, config, lock_file):
        pool = _pool(config, "serial1")
        resource = pool.acquire(1)

        assert resource.serial == "serial1"
        assert lock_file.read_text() == "serial1:1\n"

        resource.release()
        assert lock_file.read_text() == "serial1\n"

    def test_single_device_second_time(self, config, lock_file, sem):
        lock_file.write_text("serial1\n")
        pool = _pool(config, "serial1")
        resource = pool.acquire(1)

        assert resource.serial == "serial1"
        assert lock_file.read_text() == "serial1:1\n"
        assert sem.value == 0

        resource.release()
        assert lock_file.read_text() == "serial1\n"
        assert sem.value == 1

    def test_single_device_three_runs(self, config, lock_file):
        pool = _pool(config, "serial1")
        for _ in range(3):
            resource = pool.acquire(1)
            assert resource.serial == "serial1"
            resource.release()
        assert lock_file.read_text() == "serial1\n"

    def test_multiple_devices(self, config, lock_file, sem):
        """Each caller gets its own device."""
        pool = _pool(config, "serial2", "serial1")
        resource1 = pool.acquire(1)
        resource2 = pool.acquire(2)

        assert resource1.serial == "serial1"
        assert resource2.serial == "serial2"
        assert lock_file.read_text() == "serial1:1\nserial2:2\n"
        assert sem.value == 0

        resource1.release()
        resource2.release()
        assert lock_file.read_text() == "serial1\nserial2\n"
        assert sem.value == 2

    def test_acquire_defaults_to_current_pid(self, config, lock_file):
        pool = _pool(config, "d1")
        resource = pool.acquire()
        assert resource.pid == os.getpid()
        assert lock_file.read_text() == f"d1:{os.getpid()}\n"
        resource.release()

    def test_release_is_idempotent(self, config, lock_file, sem):
        pool = _pool(config, "d1")
        resource = pool.acquire(1)
        resource.release()
        resource.release()
        assert resource.released
        assert lock_file.read_text() == "d1\n"
        assert sem.value == 1


class TestReconciliation:
    """Ledger and semaphore follow attached devices and dead holders."""

    def test_device_removed(self, config, lock_file, sem):
        lock_file.write_text("serial1\nserial2\n")
        pool = _pool(config, "serial2")
        resource = pool.acquire(1)

        assert resource.serial == "serial2"
        assert lock_file.read_text() == "serial2:1\n"
        assert sem.value == 0

        resource.release()
        assert lock_file.read_text() == "serial2\n"
        assert sem.value == 1

    def test_device_attached_while_held(self, config, lock_file, sem):
        pool = _pool(config, "d1", processes=[1])
        resource = pool.acquire(1)
        pool.runtime.attach(["d2"])

        second = pool.acquire(2)
        assert second.serial == "d2"
        assert lock_file.read_text() == "d1:1\nd2:2\n"
        resource.release()
        second.release()
        assert sem.value == 2

    def test_stale_holder_is_reclaimed(self, config, lock_file):
        """A dead holder's slot goes to the next caller."""
        lock_file.write_text("d1:999\n")
        pool = _pool(config, "d1")
        resource = pool.acquire(42)

        assert resource.serial == "d1"
        assert lock_file.read_text() == "d1:42\n"
        assert ("is_running", 999) in pool.runtime.calls

    def test_live_holder_is_kept(self, config, lock_file, sem):
        lock_file.write_text("d1:7\n")
        pool = _pool(config, "d1", processes=[7])

        assert pool._try_claim(42) is None
        assert lock_file.read_text() == "d1:7\n"
        assert sem.value == 0

    def test_liveness_not_checked_when_slot_free(self, config, lock_file):
        lock_file.write_text("a:999\nb\n")
        pool = _pool(config, "a", "b")
        assert pool._try_claim(1) == "b"
        assert not any(call[0] == "is_running" for call in pool.runtime.calls)
        assert lock_file.read_text() == "a:999\nb:1\n"

    def test_semaphore_lowered_to_free_count(self, config, lock_file, sem):
        sem.adjust_to(5)
        lock_file.write_text("d1:7\n")
        pool = _pool(config, "d1", processes=[7])
        pool._try_claim(2)
        assert sem.value == 0

    def test_semaphore_raised_to_free_count(self, config, sem):
        pool = _pool(config, "a", "b", "c")
        assert pool._try_claim(1) == "a"
        # Free count before this claim, including the permit about to be taken
        assert sem.value == 3

    def test_take_permit_recovers_from_lost_permit(self, config, sem):
        """A permit counted away by another pass is put back under the lock."""
        pool = _pool(config, "d1")
        assert pool._try_claim(1) == "d1"
        sem.adjust_to(0)

        permit = pool._take_permit()
        assert not permit.released
        assert sem.value == 0
        permit.release()


class TestResourceHandle:
    def test_context_exit_returns_permit_but_keeps_slot(self, config, lock_file, sem):
        pool = _pool(config, "d1", processes=[1])
        with pool.acquire(1) as resource:
            assert isinstance(resource, Resource)
            assert sem.value == 0
        assert sem.value == 1
        assert lock_file.read_text() == "d1:1\n"

        # The next pass sees the slot still held and corrects the semaphore
        assert pool._try_claim(2) is None
        assert sem.value == 0

    def test_dropped_handle_returns_permit(self, config, lock_file, sem):
        pool = _pool(config, "d1")
        resource = pool.acquire(1)
        assert sem.value == 0
        del resource
        gc.collect()
        assert sem.value == 1
        assert lock_file.read_text() == "d1:1\n"


class TestBoot:
    def test_boot_timeout_releases_claim(self, config, lock_file, sem):
        config.boot_attempts = 2
        runtime = InMemoryRuntime(
            device_serials=["d1"],
            props={"init.svc.bootanim": ["running"], "sys.boot_completed": ["0"]},
        )
        pool = DevicePool(runtime, config)

        with pytest.raises(BootTimeoutError, match="init.svc.bootanim"):
            pool.acquire(1)
        assert lock_file.read_text() == "d1\n"
        assert sem.value == 1

    def test_claim_skips_boot_wait(self, config):
        runtime = InMemoryRuntime(device_serials=["d1"], props={})
        pool = DevicePool(runtime, config)
        resource = pool.claim(1)
        assert resource.serial == "d1"
        assert not any(call[0] == "getprop" for call in runtime.calls)
        resource.release()


class TestErrors:
    def test_runtime_failure_propagates(self, config, lock_file):
        lock_file.write_text("d1:3\n")
        runtime = MagicMock(spec=Runtime)
        runtime.devices.side_effect = DeviceError("adb devices failed", tool="adb")
        pool = DevicePool(runtime, config)

        with pytest.raises(DeviceError, match="adb devices failed"):
            pool.acquire(1)
        assert lock_file.read_text() == "d1:3\n"

    def test_liveness_failure_propagates(self, config, lock_file):
        lock_file.write_text("d1:3\n")
        runtime = MagicMock(spec=Runtime)
        runtime.devices.return_value = ["d1"]
        runtime.is_running.side_effect = DeviceError("ps failed")
        pool = DevicePool(runtime, config)

        with pytest.raises(DeviceError, match="ps failed"):
            pool.acquire(1)
        assert lock_file.read_text() == "d1:3\n"

    def test_corrupt_ledger_is_fatal(self, config, lock_file):
        lock_file.write_text("d1:pid\n")
        pool = _pool(config, "d1")
        with pytest.raises(LedgerParseError):
            pool.acquire(1)


class TestForcedReleaseAndStatus:
    def test_release_device_without_permit(self, config, lock_file, sem):
        lock_file.write_text("d1:5\nd2:6\n")
        pool = _pool(config, "d1", "d2")
        pool.release_device("d1")
        assert lock_file.read_text() == "d1\nd2:6\n"
        assert sem.value == 1

    def test_status(self, config, lock_file, sem):
        lock_file.write_text("d1:5\nd2\n")
        sem.adjust_to(1)
        pool = _pool(config, "d1", "d2")
        status = pool.status()
        assert status.lock_file == str(lock_file)
        assert status.semaphore == config.semaphore_name
        assert status.semaphore_value == 1
        assert status.available == 1
        assert status.entries == [LedgerEntry(serial="d1", pid=5), LedgerEntry(serial="d2")]


class TestBlocking:
    def test_resource_blocks_until_one_is_released(self, config, lock_file):
        """The second caller waits for the first to release."""
        runtime = InMemoryRuntime(device_serials=["serial1"], processes={1})
        pool_a = DevicePool(runtime, config)
        resource1 = pool_a.acquire(1)
        assert lock_file.read_text() == "serial1:1\n"

        results: queue.Queue[str] = queue.Queue()

        def second():
            pool_b = DevicePool(runtime, config)
            resource2 = pool_b.acquire(2)
            results.put(resource2.serial)
            resource2.release()

        t = threading.Thread(target=second, daemon=True)
        t.start()

        with pytest.raises(queue.Empty):
            results.get(timeout=0.5)

        resource1.release()
        assert results.get(timeout=5) == "serial1"
        t.join(timeout=5)
        assert not t.is_alive()
        assert lock_file.read_text() == "serial1\n"
