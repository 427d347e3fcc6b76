"""Pool configuration and runtime directory resolution."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path

from adpool.models import LockFileError

logger = logging.getLogger("adpool.config")

CONFIG_DIR = Path.home() / ".adpool"
USER_CONFIG_FILE = CONFIG_DIR / "config.json"


@dataclass
class PoolConfig:
    """Configuration shared by every process cooperating on one pool."""

    adb_path: str = "adb"
    runtime_dir: Path | None = None
    semaphore_name: str = "/adp"
    lock_file_name: str = "adp.lock"
    env_var: str = "ANDROID_SERIAL"
    boot_attempts: int = 60
    boot_interval: float = 1.0
    retry_interval: float = 1.0

    def __post_init__(self) -> None:
        if self.runtime_dir is not None:
            self.runtime_dir = Path(self.runtime_dir)
        if not self.semaphore_name.startswith("/"):
            self.semaphore_name = "/" + self.semaphore_name

    @property
    def lock_file(self) -> Path:
        """Path of the ledger file, creating its directory if needed."""
        runtime_dir = self.runtime_dir or default_runtime_dir()
        try:
            runtime_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LockFileError(runtime_dir, e.strerror or str(e)) from e
        return runtime_dir / self.lock_file_name

    @classmethod
    def load(cls, **overrides) -> PoolConfig:
        """Build a config from the user config file, then apply overrides.

        Overrides whose value is None are ignored so CLI flags that were not
        given fall through to the file or the defaults.
        """
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in read_user_config().items():
            if key in known:
                values[key] = value
            else:
                logger.warning("Ignoring unknown config key %r in %s", key, USER_CONFIG_FILE)
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def default_runtime_dir() -> Path:
    """Per-user runtime directory: $XDG_RUNTIME_DIR/adp, else ~/.cache/adp."""
    base = os.environ.get("XDG_RUNTIME_DIR")
    if base:
        return Path(base) / "adp"
    return Path.home() / ".cache" / "adp"


def read_user_config() -> dict:
    """Read user config from ~/.adpool/config.json. Returns {} if missing or invalid."""
    if not USER_CONFIG_FILE.exists():
        return {}
    try:
        data = json.loads(USER_CONFIG_FILE.read_text())
    except Exception as e:
        logger.warning("Failed to read config file %s: %s", USER_CONFIG_FILE, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Config file %s is not a JSON object", USER_CONFIG_FILE)
        return {}
    return data
