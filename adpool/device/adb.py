"""AdbBackend — wrapper around the adb command line tool."""

from __future__ import annotations

import logging
import subprocess

from adpool.models import DeviceError

logger = logging.getLogger("adpool.adb")


class AdbBackend:
    """Talks to attached Android devices via adb subprocess calls."""

    def __init__(self, path: str = "adb") -> None:
        self.path = path

    def _run_adb(self, *args: str, capture: bool = True) -> str:
        """Run an adb command and return its stdout.

        Raises DeviceError if adb is missing or exits non-zero.
        """
        cmd = [self.path, *args]
        logger.debug("running %s", " ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=capture, text=True)
        except OSError as e:
            raise DeviceError(f"failed to run {self.path}: {e}", tool="adb") from e
        if result.returncode != 0:
            message = f"adb {args[0]} failed with status {result.returncode}"
            stderr = (result.stderr or "").strip()
            if stderr:
                message = f"{message}: {stderr}"
            raise DeviceError(message, tool="adb")
        return result.stdout or ""

    def devices(self) -> list[str]:
        """List serials of attached devices in the 'device' state.

        Parses ``adb devices -l``, skipping the header line and devices that
        are offline or unauthorized.
        """
        stdout = self._run_adb("devices", "-l")
        serials: list[str] = []
        for line in stdout.splitlines()[1:]:
            parts = line.split()
            if not parts:
                continue
            if len(parts) > 1 and parts[1] != "device":
                logger.debug("skipping %s in state %s", parts[0], parts[1])
                continue
            serials.append(parts[0])
        return serials

    def wait_for_device(self) -> None:
        """Block until at least one device is attached."""
        self._run_adb("wait-for-device", capture=False)

    def shell_getprop(self, serial: str, name: str) -> str:
        """Read a system property from a device."""
        stdout = self._run_adb("-s", serial, "shell", "getprop", name)
        return stdout.strip()
