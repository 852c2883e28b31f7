from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


# Environment variable names
ENV_CONFIG_DIR = "RMOUNT_CONFIG_DIR"
ENV_POLL_INTERVAL = "RMOUNT_POLL_INTERVAL"
ENV_SETTLE_SECONDS = "RMOUNT_SETTLE_SECONDS"
ENV_RCLONE_BINARY = "RMOUNT_RCLONE_BINARY"
ENV_LOG_LEVEL = "RMOUNT_LOG_LEVEL"
ENV_LOG_FILE = "RMOUNT_LOG_FILE"

DEFAULT_POLL_INTERVAL = 30.0
DEFAULT_SETTLE_SECONDS = 2.0


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _positive_float(name: str, default: float) -> float:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        val = float(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid value for {name}: {raw!r} is not a number") from exc
    if val <= 0:
        raise RuntimeError(f"Invalid value for {name}: must be > 0")
    return val


def default_config_dir() -> Path:
    return Path.home() / ".rmount"


@dataclass(frozen=True)
class Settings:
    """
    Process-level settings resolved once at startup.

    These are not secrets and are not part of the encrypted AppConfig; they
    describe where things live and how the background machinery is tuned.
    """

    config_dir: Path
    poll_interval: float = DEFAULT_POLL_INTERVAL
    settle_seconds: float = DEFAULT_SETTLE_SECONDS
    rclone_binary: str = "rclone"
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    @property
    def config_file(self) -> Path:
        return self.config_dir / "config.enc"

    @property
    def rclone_config_file(self) -> Path:
        return self.config_dir / "rclone.conf"

    @property
    def cache_dir(self) -> Path:
        return self.config_dir / "cache"

    @classmethod
    def from_env(cls) -> "Settings":
        config_dir = _getenv(ENV_CONFIG_DIR)
        log_file = _getenv(ENV_LOG_FILE)
        return cls(
            config_dir=Path(config_dir).expanduser() if config_dir else default_config_dir(),
            poll_interval=_positive_float(ENV_POLL_INTERVAL, DEFAULT_POLL_INTERVAL),
            settle_seconds=_positive_float(ENV_SETTLE_SECONDS, DEFAULT_SETTLE_SECONDS),
            rclone_binary=_getenv(ENV_RCLONE_BINARY, "rclone") or "rclone",
            log_level=(_getenv(ENV_LOG_LEVEL, "INFO") or "INFO").upper(),
            log_file=Path(log_file).expanduser() if log_file else None,
        )
