"""Configuration — environment (.env) backed, typed dataclasses."""

import os
import sys
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from dotenv import load_dotenv
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from alarmsync.domain.keys import DEFAULT_KEY_SPACE, DEFAULT_MAX_ATTEMPTS
from alarmsync.domain.models import DuplicateHandlingMode
from alarmsync.domain.recovery import RecoveryTracker
from alarmsync.domain.timing import AllDayPolicy

load_dotenv()

_stderr_print = lambda *a, **kw: print(*a, **kw, file=sys.stderr)

ENV_PREFIX = "ALARMSYNC_"


def _env(name: str, default: str) -> str:
    return os.getenv(ENV_PREFIX + name, default).strip()


def _env_int(name: str, default: int, minimum: int = None, maximum: int = None) -> int:
    raw = _env(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        _stderr_print(f"Invalid {ENV_PREFIX}{name}={raw!r}, falling back to {default}")
        return default
    if (minimum is not None and value < minimum) or (maximum is not None and value > maximum):
        _stderr_print(f"Out of range {ENV_PREFIX}{name}={value}, falling back to {default}")
        return default
    return value


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = _env(name, str(default))
    try:
        value = float(raw)
    except ValueError:
        _stderr_print(f"Invalid {ENV_PREFIX}{name}={raw!r}, falling back to {default}")
        return default
    if value < minimum:
        _stderr_print(f"Out of range {ENV_PREFIX}{name}={value}, falling back to {default}")
        return default
    return value


@dataclass
class AllDayConfig:
    hour: int = 20
    minute: int = 0
    timezone: str = "UTC"

    @classmethod
    def from_env(cls) -> "AllDayConfig":
        tz = _env("TIMEZONE", "UTC") or "UTC"
        try:
            ZoneInfo(tz)
        except (ZoneInfoNotFoundError, ValueError, KeyError):
            _stderr_print(f"Unknown {ENV_PREFIX}TIMEZONE={tz!r}, falling back to 'UTC'")
            tz = "UTC"
        return cls(
            hour=_env_int("ALL_DAY_HOUR", 20, 0, 23),
            minute=_env_int("ALL_DAY_MINUTE", 0, 0, 59),
            timezone=tz,
        )

    def policy(self) -> AllDayPolicy:
        return AllDayPolicy(hour=self.hour, minute=self.minute, tz=self.timezone)


@dataclass
class RecoveryConfig:
    max_attempts: int = 3
    backoff_seconds: int = 60
    sweep_cooldown_seconds: int = 30
    max_tracked: int = 256
    entry_ttl_seconds: int = 86400

    @classmethod
    def from_env(cls) -> "RecoveryConfig":
        return cls(
            max_attempts=_env_int("RECOVERY_MAX_ATTEMPTS", 3, 1),
            backoff_seconds=_env_int("RECOVERY_BACKOFF_SECONDS", 60, 0),
            sweep_cooldown_seconds=_env_int("RECOVERY_SWEEP_COOLDOWN_SECONDS", 30, 0),
            max_tracked=_env_int("RECOVERY_MAX_TRACKED", 256, 1),
            entry_ttl_seconds=_env_int("RECOVERY_ENTRY_TTL_SECONDS", 86400, 1),
        )

    def tracker(self) -> RecoveryTracker:
        return RecoveryTracker(
            max_attempts=self.max_attempts,
            backoff=timedelta(seconds=self.backoff_seconds),
            sweep_cooldown=timedelta(seconds=self.sweep_cooldown_seconds),
            max_tracked=self.max_tracked,
            entry_ttl=timedelta(seconds=self.entry_ttl_seconds),
        )


@dataclass
class SchedulingConfig:
    lookahead_hours: int = 48
    duplicate_mode: DuplicateHandlingMode = DuplicateHandlingMode.ALLOW_MULTIPLE
    key_space: int = DEFAULT_KEY_SPACE
    max_key_attempts: int = DEFAULT_MAX_ATTEMPTS
    expired_retention_hours: int = 24
    debounce_seconds: float = 2.0

    @classmethod
    def from_env(cls) -> "SchedulingConfig":
        raw_mode = _env("DUPLICATE_MODE", "ALLOW_MULTIPLE")
        mode = DuplicateHandlingMode.from_value(raw_mode)
        if raw_mode and mode.value != raw_mode.upper():
            _stderr_print(f"Unsupported {ENV_PREFIX}DUPLICATE_MODE={raw_mode!r}, falling back to 'ALLOW_MULTIPLE'")
        return cls(
            lookahead_hours=_env_int("LOOKAHEAD_HOURS", 48, 1),
            duplicate_mode=mode,
            key_space=_env_int("KEY_SPACE", DEFAULT_KEY_SPACE, 1),
            max_key_attempts=_env_int("MAX_KEY_ATTEMPTS", DEFAULT_MAX_ATTEMPTS, 0),
            expired_retention_hours=_env_int("EXPIRED_RETENTION_HOURS", 24, 0),
            debounce_seconds=_env_float("DEBOUNCE_SECONDS", 2.0),
        )

    @property
    def lookahead(self) -> timedelta:
        return timedelta(hours=self.lookahead_hours)

    @property
    def expired_retention(self) -> timedelta:
        return timedelta(hours=self.expired_retention_hours)


@dataclass
class StorageConfig:
    storage_dir: str = "memory"
    events_file: str = "memory/events.json"
    rules_file: str = ""  # empty = <storage_dir>/rules.json

    @classmethod
    def from_env(cls) -> "StorageConfig":
        storage_dir = _env("STORAGE_DIR", "memory") or "memory"
        return cls(
            storage_dir=storage_dir,
            events_file=_env("EVENTS_FILE", str(Path(storage_dir) / "events.json")),
            rules_file=_env("RULES_FILE", ""),
        )

    @property
    def rules_path(self) -> Path:
        return Path(self.rules_file) if self.rules_file else Path(self.storage_dir) / "rules.json"


@dataclass
class AppConfig:
    """Typed configuration for the alarmsync service."""

    refresh_interval_minutes: int = 30
    all_day: AllDayConfig = field(default_factory=AllDayConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Create AppConfig from environment variables."""
        return cls(
            refresh_interval_minutes=_env_int("REFRESH_INTERVAL_MINUTES", 30, 1),
            all_day=AllDayConfig.from_env(),
            recovery=RecoveryConfig.from_env(),
            scheduling=SchedulingConfig.from_env(),
            storage=StorageConfig.from_env(),
        )
