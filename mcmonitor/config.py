"""
Design (config.py)
- Purpose: Centralize constants and runtime configuration.
- Inputs: Environment variables (MCMONITOR_*) via Settings.from_env().
- Outputs: Default constants and a validated Settings instance.
- Side effects: None (reads os.environ only when asked).
- Thread-safety: Settings is frozen after validate(); share it freely.
"""

import os
from dataclasses import dataclass, replace

from .errors import ConfigError

# Sweep cadence: ticks land on wall-clock multiples of this many seconds
PING_INTERVAL_SEC = 600

# Whole handshake + status read must finish within this budget
PING_TIMEOUT_SEC = 3.0

# Concurrent probes per sweep (servers beyond this queue)
MAX_WORKERS = 8
MAX_WORKERS_LIMIT = 256

# Protocol version sent in the handshake; -1 asks the server to report its own
PROTOCOL_VERSION = -1

DEFAULT_PORT = 25565

# History retention; 0 keeps everything
RETENTION_DAYS = 0

# Persistence: filenames resolved relative to the working directory unless overridden
DATABASE_FILENAME = "pings.db"
SERVERS_FILENAME = "servers.json"

# Chart downsampling chunk sizes (seconds) per range, and the blip threshold
DOWNSAMPLE_CHUNK_SEC = {"week": 60 * 60, "month": 6 * 60 * 60}
DOWNSAMPLE_BLIP_SEC = 20 * 60

NOTIFY_TITLE = "Minecraft Server Status"
NOTIFY_TIMEOUT_SEC = 5


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    interval_sec: int = PING_INTERVAL_SEC
    timeout_sec: float = PING_TIMEOUT_SEC
    max_workers: int = MAX_WORKERS
    protocol_version: int = PROTOCOL_VERSION
    retention_days: int = RETENTION_DAYS
    database_path: str = DATABASE_FILENAME
    servers_path: str = SERVERS_FILENAME
    sweep_on_start: bool = True
    legacy_fallback: bool = False
    notifications: bool = False

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        """Build Settings from MCMONITOR_* variables, falling back to the defaults above."""
        env = os.environ if environ is None else environ
        base = cls()
        try:
            return cls(
                interval_sec=int(env.get("MCMONITOR_INTERVAL", base.interval_sec)),
                timeout_sec=float(env.get("MCMONITOR_TIMEOUT", base.timeout_sec)),
                max_workers=int(env.get("MCMONITOR_WORKERS", base.max_workers)),
                protocol_version=int(env.get("MCMONITOR_PROTOCOL", base.protocol_version)),
                retention_days=int(env.get("MCMONITOR_RETENTION_DAYS", base.retention_days)),
                database_path=env.get("MCMONITOR_DB", base.database_path),
                servers_path=env.get("MCMONITOR_SERVERS", base.servers_path),
                sweep_on_start=_env_bool(env.get("MCMONITOR_SWEEP_ON_START", "1")),
                legacy_fallback=_env_bool(env.get("MCMONITOR_LEGACY", "0")),
                notifications=_env_bool(env.get("MCMONITOR_NOTIFY", "0")),
            )
        except ValueError as exc:
            raise ConfigError(f"invalid environment setting: {exc}") from exc

    def with_overrides(self, **changes) -> "Settings":
        """Return a copy with the non-None entries of changes applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def validate(self) -> "Settings":
        """
        Purpose: Reject settings the monitor cannot run with. These are the only fatal errors.
        Outputs: self, so calls can be chained.
        """
        if self.interval_sec <= 0:
            raise ConfigError(f"interval must be positive, got {self.interval_sec}")
        if not 1 <= self.max_workers <= MAX_WORKERS_LIMIT:
            raise ConfigError(
                f"worker pool size must be between 1 and {MAX_WORKERS_LIMIT}, got {self.max_workers}"
            )
        if self.timeout_sec <= 0:
            raise ConfigError(f"probe timeout must be positive, got {self.timeout_sec}")
        if self.retention_days < 0:
            raise ConfigError(f"retention must be >= 0 days, got {self.retention_days}")
        return self
