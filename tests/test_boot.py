"""Tests for boot readiness polling."""

from __future__ import annotations

import pytest

from adpool.device.boot import wait_for_boot
from adpool.device.runtime import InMemoryRuntime
from adpool.models import BootProperty, BootTimeoutError, DeviceError


class _Sleeps:
    """Records sleep calls instead of sleeping."""

    def __init__(self):
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleeps():
    return _Sleeps()


class TestWaitForBoot:
    def test_ready_on_first_query(self, sleeps):
        runtime = InMemoryRuntime(device_serials=["d1"])
        wait_for_boot(runtime, "d1", sleep=sleeps)
        assert sleeps.calls == []
        assert runtime.calls == [
            ("getprop", "d1", "init.svc.bootanim"),
            ("getprop", "d1", "sys.boot_completed"),
        ]

    def test_ready_on_last_attempt(self, sleeps):
        """59 wrong values then the right one still succeeds."""
        runtime = InMemoryRuntime(
            device_serials=["d1"],
            props={
                "init.svc.bootanim": ["running"] * 59 + ["stopped"],
                "sys.boot_completed": ["1"],
            },
        )
        wait_for_boot(runtime, "d1", sleep=sleeps)
        assert runtime.prop_reads("init.svc.bootanim") == 60
        assert sleeps.calls == [1.0] * 59

    def test_times_out_naming_property(self, sleeps):
        runtime = InMemoryRuntime(
            device_serials=["d1"],
            props={"init.svc.bootanim": ["stopped"], "sys.boot_completed": ["0"]},
        )
        with pytest.raises(BootTimeoutError, match="sys.boot_completed") as exc_info:
            wait_for_boot(runtime, "d1", sleep=sleeps)
        err = exc_info.value
        assert err.prop == "sys.boot_completed"
        assert err.expected == "1"
        assert err.actual == "0"
        assert err.serial == "d1"
        assert runtime.prop_reads("sys.boot_completed") == 60
        # No sleep after the final attempt
        assert len(sleeps.calls) == 59

    def test_properties_checked_in_order(self, sleeps):
        """A failing first property stops before the second is read."""
        runtime = InMemoryRuntime(
            device_serials=["d1"],
            props={"init.svc.bootanim": ["running"], "sys.boot_completed": ["1"]},
        )
        with pytest.raises(BootTimeoutError, match="init.svc.bootanim"):
            wait_for_boot(runtime, "d1", attempts=3, sleep=sleeps)
        assert runtime.prop_reads("sys.boot_completed") == 0

    def test_custom_properties_and_interval(self, sleeps):
        runtime = InMemoryRuntime(device_serials=["d1"], props={"dev.ready": ["no", "yes"]})
        wait_for_boot(
            runtime, "d1",
            properties=[BootProperty(name="dev.ready", expected="yes")],
            interval=0.25,
            sleep=sleeps,
        )
        assert sleeps.calls == [0.25]

    def test_runtime_error_propagates_without_retry(self, sleeps):
        runtime = InMemoryRuntime(device_serials=[])
        with pytest.raises(DeviceError, match="not found"):
            wait_for_boot(runtime, "d1", sleep=sleeps)
        assert sleeps.calls == []
