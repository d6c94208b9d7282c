"""Centralized application configuration."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional
import os
import sys


def get_default_data_dir(
    app_name: str,
    *,
    platform: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """Return the data directory for ``app_name``.

    ``OUTBOX_DATA_DIR`` wins over the OS-specific default.
    """

    environ = dict(os.environ if env is None else env)
    override = environ.get("OUTBOX_DATA_DIR")
    if override:
        return Path(override).expanduser()

    platform_id = (platform or sys.platform).lower()
    home_dir = Path(home or Path.home())
    sanitized = (app_name.strip() or "app").replace("/", "-").replace("\\", "-")

    if platform_id.startswith("win"):
        base = Path(environ.get("APPDATA") or home_dir / "AppData" / "Roaming")
    elif platform_id == "darwin":
        base = home_dir / "Library" / "Application Support"
    else:
        base = Path(environ.get("XDG_DATA_HOME") or home_dir / ".local" / "share")

    return base.expanduser() / sanitized


APP_NAME = "Outbox"


DATA_DIR = get_default_data_dir(APP_NAME)
DB_PATH = DATA_DIR / "outbox.db"
CONFIG_PATH = DATA_DIR / "config.json"
LOG_PATH = DATA_DIR / "logs" / "outbox.log"


@dataclass(frozen=True)
class OutboxSettings:
    """Retry and scheduling knobs of the synchronizer. Durations are in ms."""

    max_attempts: int = 5
    base_delay_ms: int = 1000
    max_delay_ms: int = 60000
    tick_interval_ms: int = 5000
    partition_workers: int = 1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_ms < 1:
            raise ValueError("base_delay_ms must be positive")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must not be lower than base_delay_ms")
        if self.tick_interval_ms <= 0:
            raise ValueError("tick_interval_ms must be positive")
        if self.partition_workers < 1:
            raise ValueError("partition_workers must be at least 1")


OUTBOX = OutboxSettings()


@dataclass(frozen=True)
class LogSettings:
    enabled: bool = True
    path: Path = LOG_PATH
    level: str = "INFO"
    max_bytes: int = 1_000_000
    backup_count: int = 3
    fmt: str = field(default="%(asctime)s [%(levelname)s] %(message)s")


LOGGING = LogSettings()


__all__ = [
    "APP_NAME",
    "DATA_DIR",
    "DB_PATH",
    "CONFIG_PATH",
    "LOG_PATH",
    "OUTBOX",
    "LOGGING",
    "LogSettings",
    "OutboxSettings",
    "get_default_data_dir",
]
