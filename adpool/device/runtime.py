"""Device runtimes: enumerate devices, check process liveness, read device props.

The pool only talks to a Runtime. AdbRuntime is the real one; InMemoryRuntime
is a deterministic stand-in for tests and dry runs.
"""

from __future__ import annotations

import abc
import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass, field

from adpool.device.adb import AdbBackend
from adpool.models import DeviceError

logger = logging.getLogger("adpool.runtime")


class Runtime(abc.ABC):
    """What the pool needs to know about devices and processes."""

    @abc.abstractmethod
    def devices(self) -> list[str]:
        """Return the serials of every usable attached device."""
        ...

    @abc.abstractmethod
    def is_running(self, pid: int) -> bool:
        """Return True if a process with this pid exists."""
        ...

    @abc.abstractmethod
    def getprop(self, serial: str, name: str) -> str:
        """Return the current value of a device property."""
        ...


def pid_exists(pid: int) -> bool:
    """Check whether a pid is alive without signalling it."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but owned by another user
        return True
    return True


class AdbRuntime(Runtime):
    """Runtime backed by adb and the local process table."""

    def __init__(self, adb_path: str = "adb") -> None:
        self.adb = AdbBackend(adb_path)

    def devices(self) -> list[str]:
        serials = self.adb.devices()
        if not serials:
            logger.info("No devices attached, waiting for one")
            self.adb.wait_for_device()
            serials = self.adb.devices()
        return serials

    def is_running(self, pid: int) -> bool:
        return pid_exists(pid)

    def getprop(self, serial: str, name: str) -> str:
        return self.adb.shell_getprop(serial, name)


@dataclass
class InMemoryRuntime(Runtime):
    """Runtime with a fixed device list and scripted property values.

    ``props`` maps a property name to the sequence of values successive
    reads return; the last value repeats once the sequence runs out. The
    default script reports every device as fully booted. Properties without
    a script read as ``prop_default``.
    """

    device_serials: list[str] = field(default_factory=list)
    processes: set[int] = field(default_factory=set)
    props: dict[str, list[str]] = field(default_factory=lambda: {
        "init.svc.bootanim": ["stopped"],
        "sys.boot_completed": ["1"],
    })
    prop_default: str | None = None
    calls: list[tuple] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._reads: dict[tuple[str, str], int] = {}

    def devices(self) -> list[str]:
        self.calls.append(("devices",))
        return list(self.device_serials)

    def is_running(self, pid: int) -> bool:
        self.calls.append(("is_running", pid))
        return pid in self.processes

    def getprop(self, serial: str, name: str) -> str:
        self.calls.append(("getprop", serial, name))
        if serial not in self.device_serials:
            raise DeviceError(f"device '{serial}' not found", tool="memory")
        script = self.props.get(name)
        if not script:
            if self.prop_default is None:
                raise DeviceError(f"no value scripted for prop {name}", tool="memory")
            return self.prop_default
        index = self._reads.get((serial, name), 0)
        self._reads[(serial, name)] = index + 1
        return script[min(index, len(script) - 1)]

    def add_process(self, pid: int) -> None:
        self.processes.add(pid)

    def kill(self, pid: int) -> None:
        self.processes.discard(pid)

    def attach(self, serials: Iterable[str]) -> None:
        for serial in serials:
            if serial not in self.device_serials:
                self.device_serials.append(serial)

    def detach(self, serial: str) -> None:
        if serial in self.device_serials:
            self.device_serials.remove(serial)

    def prop_reads(self, name: str) -> int:
        return sum(count for (_, prop), count in self._reads.items() if prop == name)
