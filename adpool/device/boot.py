"""Wait for a claimed device to finish booting."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence

from adpool.device.runtime import Runtime
from adpool.models import DEFAULT_BOOT_PROPERTIES, BootProperty, BootTimeoutError

logger = logging.getLogger("adpool.boot")

BOOT_ATTEMPTS = 60
BOOT_INTERVAL = 1.0


def wait_for_boot(
    runtime: Runtime,
    serial: str,
    properties: Sequence[BootProperty] = DEFAULT_BOOT_PROPERTIES,
    attempts: int = BOOT_ATTEMPTS,
    interval: float = BOOT_INTERVAL,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Poll each boot property in order until it reads its expected value.

    Each property gets its own budget of ``attempts`` reads, ``interval``
    seconds apart. Raises BootTimeoutError naming the first property that
    never matched. Errors from the runtime propagate immediately.
    """
    for prop in properties:
        value: str | None = None
        for attempt in range(1, attempts + 1):
            value = runtime.getprop(serial, prop.name)
            logger.debug("%s: %s = %r (attempt %d/%d)", serial, prop.name, value, attempt, attempts)
            if value == prop.expected:
                break
            if attempt < attempts:
                sleep(interval)
        else:
            raise BootTimeoutError(serial, prop.name, prop.expected, value)
    logger.debug("%s: boot completed", serial)
