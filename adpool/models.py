"""Core data models and error types for the device pool."""

from __future__ import annotations

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class PoolError(Exception):
    """Base class for every fatal device pool error."""


class LockFileError(PoolError):
    """The ledger file could not be opened or locked."""

    def __init__(self, path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"failed to open {path}: {reason}")


class LedgerParseError(PoolError):
    """A ledger record is not valid UTF-8 or has a holder field that is not a pid."""

    def __init__(self, line_no: int, line: str, reason: str = "invalid pid") -> None:
        self.line_no = line_no
        self.line = line
        self.reason = reason
        super().__init__(f"{reason} in ledger line {line_no}: {line!r}")


class SemaphoreError(PoolError):
    """The named semaphore could not be opened or queried."""


class DeviceError(PoolError):
    """A device tool invocation failed."""

    def __init__(self, message: str, tool: str = "") -> None:
        self.tool = tool
        super().__init__(message)


class BootTimeoutError(DeviceError):
    """A boot property never reached its expected value."""

    def __init__(self, serial: str, prop: str, expected: str, actual: str | None) -> None:
        self.serial = serial
        self.prop = prop
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"timed out waiting for prop {prop} on {serial}: "
            f"expected {expected!r} but was {actual!r}",
            tool="boot",
        )


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class BootProperty(BaseModel):
    """A device property that must reach a value before the device is usable."""

    name: str = Field(description="getprop property name (e.g., 'sys.boot_completed')")
    expected: str


DEFAULT_BOOT_PROPERTIES: tuple[BootProperty, ...] = (
    BootProperty(name="init.svc.bootanim", expected="stopped"),
    BootProperty(name="sys.boot_completed", expected="1"),
)


class LedgerEntry(BaseModel):
    """One ledger slot. pid is None when the slot is free."""

    serial: str
    pid: int | None = None


class PoolStatus(BaseModel):
    """Snapshot of the pool reported by `adpool status`."""

    lock_file: str
    semaphore: str
    semaphore_value: int | None = Field(
        default=None,
        description="Current semaphore value, None where the platform cannot report it",
    )
    available: int = 0
    entries: list[LedgerEntry] = Field(default_factory=list)
