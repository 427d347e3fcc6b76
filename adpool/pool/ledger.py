"""Claim ledger: which device serial is held by which process.

The persisted form is one record per line, ``serial`` for a free slot or
``serial:pid`` for a held one, always written in serial order.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator
from typing import IO

from adpool.models import LedgerEntry, LedgerParseError

logger = logging.getLogger("adpool.ledger")

_PID_RE = re.compile(r"[0-9]+")


class Ledger:
    """Ordered mapping of device serial to holder pid (None when free)."""

    def __init__(self, slots: dict[str, int | None] | None = None) -> None:
        self._slots: dict[str, int | None] = dict(slots or {})

    # ----------------------------------------------------------------
    # Serialization
    # ----------------------------------------------------------------

    @classmethod
    def read(cls, source: IO[str]) -> Ledger:
        """Parse ledger records from a text stream.

        Raises LedgerParseError if a holder field is not a plain decimal
        integer or the stream is not valid UTF-8.
        """
        slots: dict[str, int | None] = {}
        try:
            for line_no, raw in enumerate(source, start=1):
                line = raw.strip()
                if not line:
                    continue
                serial, sep, pid = line.partition(":")
                if not sep:
                    slots[serial] = None
                    continue
                if not _PID_RE.fullmatch(pid):
                    raise LedgerParseError(line_no, line)
                slots[serial] = int(pid)
        except UnicodeDecodeError as e:
            # The ledger is small enough to decode in one chunk
            line_no = e.object[: e.start].count(b"\n") + 1
            bad = e.object.split(b"\n")[line_no - 1].decode("utf-8", "replace")
            raise LedgerParseError(line_no, bad, reason="invalid UTF-8") from None
        ledger = cls(slots)
        logger.debug("read ledger: %s", ledger)
        return ledger

    @classmethod
    def parse(cls, text: str) -> Ledger:
        return cls.read(text.splitlines())

    def write(self, dest: IO[str]) -> None:
        """Write every slot, in serial order, one per line."""
        dest.write(self.dumps())

    def dumps(self) -> str:
        return "".join(
            f"{serial}\n" if pid is None else f"{serial}:{pid}\n"
            for serial, pid in self._items()
        )

    # ----------------------------------------------------------------
    # Reconciliation
    # ----------------------------------------------------------------

    def update(self, live_serials: Iterable[str]) -> None:
        """Drop detached devices and add newly attached ones as free slots."""
        live = set(live_serials)
        for serial in [s for s in self._slots if s not in live]:
            logger.debug("remove %s (holder %s)", serial, self._slots[serial])
            del self._slots[serial]
        for serial in sorted(live):
            if serial not in self._slots:
                logger.debug("insert %s", serial)
                self._slots[serial] = None

    # ----------------------------------------------------------------
    # Claims
    # ----------------------------------------------------------------

    def acquire(self, pid: int) -> str | None:
        """Mark the first free slot as held by pid and return its serial."""
        for serial, holder in self._items():
            if holder is None:
                self._slots[serial] = pid
                return serial
        return None

    def release(self, serial: str) -> None:
        """Mark serial free whoever holds it.

        An unknown serial is inserted as a free slot; the next update drops
        it again if the device is not attached.
        """
        logger.debug("release %s (holder %s)", serial, self._slots.get(serial))
        self._slots[serial] = None

    def release_all(self, serials: Iterable[str]) -> None:
        for serial in serials:
            self.release(serial)

    def count_available(self) -> int:
        return sum(1 for pid in self._slots.values() if pid is None)

    def unavailable(self) -> Iterator[tuple[str, int]]:
        """Yield (serial, pid) for every held slot."""
        for serial, pid in self._items():
            if pid is not None:
                yield serial, pid

    def holder(self, serial: str) -> int | None:
        return self._slots.get(serial)

    def entries(self) -> list[LedgerEntry]:
        return [LedgerEntry(serial=serial, pid=pid) for serial, pid in self._items()]

    def _items(self) -> list[tuple[str, int | None]]:
        return sorted(self._slots.items())

    def __len__(self) -> int:
        return len(self._slots)

    def __contains__(self, serial: object) -> bool:
        return serial in self._slots

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Ledger):
            return NotImplemented
        return self._slots == other._slots

    def __str__(self) -> str:
        return ",".join(
            serial if pid is None else f"{serial}:{pid}" for serial, pid in self._items()
        )

    def __repr__(self) -> str:
        return f"Ledger({self})"
