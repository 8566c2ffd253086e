import dataclasses
import os
import shlex
import sys
import tempfile
from collections.abc import Mapping
from pathlib import Path

from relaybot.errors import ConfigError

MIB = 1024 * 1024


@dataclasses.dataclass(frozen=True)
class Settings:
    bot_token: str = ""
    log_level: str = "INFO"

    # Queue
    max_concurrent: int = 5
    max_queue_size: int = 50
    max_retries: int = 7
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0
    shutdown_timeout: float = 30.0

    # Extraction
    extractor_command: tuple[str, ...] = (sys.executable, "-m", "yt_dlp")
    download_timeout: float = 600.0
    info_timeout: float = 60.0
    fallback_timeout: float = 30.0
    max_buffer_bytes: int = 500 * MIB
    extractor_impersonate: bool = False
    rapidapi_key: str | None = None

    # Delivery
    inline_limit_bytes: int = 50 * MIB

    # Paths
    temp_dir: Path = Path(tempfile.gettempdir()) / "video-relay-temp"
    data_dir: Path = Path("data")
    cookies_dir: Path = Path("cookies")

    # Guards
    memory_warning_bytes: int = 600 * MIB
    memory_critical_bytes: int = 750 * MIB
    memory_emergency_bytes: int = 850 * MIB
    memory_check_interval: float = 30.0
    emergency_grace: float = 3.0
    disk_warning_percent: float = 80.0
    disk_critical_percent: float = 90.0
    disk_emergency_percent: float = 95.0
    disk_check_interval: float = 300.0

    # Maintenance
    cleanup_interval: float = 3600.0
    temp_max_age: float = 24 * 3600.0
    max_temp_bytes: int = 500 * MIB
    record_retention_days: int = 30
    heartbeat_interval: float = 300.0

    @property
    def db_path(self) -> Path:
        return self.data_dir / "relay.db"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        reader = _EnvReader(env)
        defaults = cls()

        extractor_raw = env.get("EXTRACTOR_COMMAND", "").strip()
        settings = cls(
            bot_token=env.get("BOT_TOKEN", "").strip(),
            log_level=env.get("LOG_LEVEL", defaults.log_level).strip().upper() or defaults.log_level,
            max_concurrent=reader.get_int("MAX_CONCURRENT", defaults.max_concurrent),
            max_queue_size=reader.get_int("MAX_QUEUE_SIZE", defaults.max_queue_size),
            max_retries=reader.get_int("MAX_RETRIES", defaults.max_retries),
            retry_base_delay=reader.get_float("RETRY_BASE_DELAY_SECONDS", defaults.retry_base_delay),
            retry_max_delay=reader.get_float("RETRY_MAX_DELAY_SECONDS", defaults.retry_max_delay),
            shutdown_timeout=reader.get_float("SHUTDOWN_TIMEOUT_SECONDS", defaults.shutdown_timeout),
            extractor_command=tuple(shlex.split(extractor_raw)) if extractor_raw else defaults.extractor_command,
            download_timeout=reader.get_float("DOWNLOAD_TIMEOUT_SECONDS", defaults.download_timeout),
            info_timeout=reader.get_float("INFO_TIMEOUT_SECONDS", defaults.info_timeout),
            fallback_timeout=reader.get_float("FALLBACK_TIMEOUT_SECONDS", defaults.fallback_timeout),
            max_buffer_bytes=reader.get_int("MAX_BUFFER_BYTES", defaults.max_buffer_bytes),
            extractor_impersonate=reader.get_bool("EXTRACTOR_IMPERSONATE", defaults.extractor_impersonate),
            rapidapi_key=env.get("RAPIDAPI_KEY", "").strip() or None,
            inline_limit_bytes=reader.get_int("MAX_FILE_SIZE_MB", defaults.inline_limit_bytes // MIB) * MIB,
            temp_dir=Path(env.get("TEMP_DIR") or defaults.temp_dir),
            data_dir=Path(env.get("DATA_DIR") or defaults.data_dir),
            cookies_dir=Path(env.get("COOKIES_DIR") or defaults.cookies_dir),
            memory_warning_bytes=reader.get_int("MEMORY_WARNING_MB", defaults.memory_warning_bytes // MIB) * MIB,
            memory_critical_bytes=reader.get_int("MEMORY_CRITICAL_MB", defaults.memory_critical_bytes // MIB) * MIB,
            memory_emergency_bytes=reader.get_int("MEMORY_EMERGENCY_MB", defaults.memory_emergency_bytes // MIB) * MIB,
            memory_check_interval=reader.get_float("MEMORY_CHECK_INTERVAL_SECONDS", defaults.memory_check_interval),
            emergency_grace=reader.get_float("EMERGENCY_GRACE_SECONDS", defaults.emergency_grace),
            disk_warning_percent=reader.get_float("DISK_WARNING_PERCENT", defaults.disk_warning_percent),
            disk_critical_percent=reader.get_float("DISK_CRITICAL_PERCENT", defaults.disk_critical_percent),
            disk_emergency_percent=reader.get_float("DISK_EMERGENCY_PERCENT", defaults.disk_emergency_percent),
            disk_check_interval=reader.get_float("DISK_CHECK_INTERVAL_SECONDS", defaults.disk_check_interval),
            cleanup_interval=reader.get_float("CLEANUP_INTERVAL_SECONDS", defaults.cleanup_interval),
            temp_max_age=reader.get_float("TEMP_MAX_AGE_HOURS", defaults.temp_max_age / 3600) * 3600,
            max_temp_bytes=reader.get_int("MAX_TEMP_SIZE_MB", defaults.max_temp_bytes // MIB) * MIB,
            record_retention_days=reader.get_int("RECORD_RETENTION_DAYS", defaults.record_retention_days),
            heartbeat_interval=reader.get_float("HEARTBEAT_INTERVAL_SECONDS", defaults.heartbeat_interval),
        )
        problems = reader.problems + settings.problems()
        if problems:
            raise ConfigError("Invalid configuration: " + "; ".join(problems))
        return settings

    def problems(self) -> list[str]:
        problems: list[str] = []
        positive = {
            "MAX_CONCURRENT": self.max_concurrent,
            "MAX_QUEUE_SIZE": self.max_queue_size,
            "RETRY_BASE_DELAY_SECONDS": self.retry_base_delay,
            "RETRY_MAX_DELAY_SECONDS": self.retry_max_delay,
            "DOWNLOAD_TIMEOUT_SECONDS": self.download_timeout,
            "INFO_TIMEOUT_SECONDS": self.info_timeout,
            "FALLBACK_TIMEOUT_SECONDS": self.fallback_timeout,
            "MAX_BUFFER_BYTES": self.max_buffer_bytes,
            "MAX_FILE_SIZE_MB": self.inline_limit_bytes,
            "MEMORY_CHECK_INTERVAL_SECONDS": self.memory_check_interval,
            "DISK_CHECK_INTERVAL_SECONDS": self.disk_check_interval,
            "CLEANUP_INTERVAL_SECONDS": self.cleanup_interval,
            "MAX_TEMP_SIZE_MB": self.max_temp_bytes,
            "HEARTBEAT_INTERVAL_SECONDS": self.heartbeat_interval,
        }
        for key, value in positive.items():
            if value <= 0:
                problems.append(f"{key} must be positive (got {value})")
        if self.max_retries < 0:
            problems.append(f"MAX_RETRIES must not be negative (got {self.max_retries})")
        if self.record_retention_days < 0:
            problems.append(f"RECORD_RETENTION_DAYS must not be negative (got {self.record_retention_days})")
        if self.shutdown_timeout < 0 or self.emergency_grace < 0 or self.temp_max_age < 0:
            problems.append("SHUTDOWN_TIMEOUT_SECONDS, EMERGENCY_GRACE_SECONDS and TEMP_MAX_AGE_HOURS must not be negative")
        if not self.extractor_command:
            problems.append("EXTRACTOR_COMMAND must not be empty")
        if not (self.memory_warning_bytes < self.memory_critical_bytes < self.memory_emergency_bytes):
            problems.append("memory thresholds must satisfy WARNING < CRITICAL < EMERGENCY")
        if not (0 < self.disk_warning_percent < self.disk_critical_percent < self.disk_emergency_percent <= 100):
            problems.append("disk thresholds must satisfy 0 < WARNING < CRITICAL < EMERGENCY <= 100")
        return problems


class _EnvReader:
    def __init__(self, env: Mapping[str, str]):
        self.env = env
        self.problems: list[str] = []

    def get_int(self, key: str, default: int) -> int:
        raw = (self.env.get(key) or "").strip()
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            self.problems.append(f"{key} must be an integer (got {raw!r})")
            return default

    def get_float(self, key: str, default: float) -> float:
        raw = (self.env.get(key) or "").strip()
        if not raw:
            return default
        try:
            return float(raw)
        except ValueError:
            self.problems.append(f"{key} must be a number (got {raw!r})")
            return default

    def get_bool(self, key: str, default: bool) -> bool:
        raw = (self.env.get(key) or "").strip().lower()
        if not raw:
            return default
        if raw in ("1", "true", "yes", "on"):
            return True
        if raw in ("0", "false", "no", "off"):
            return False
        self.problems.append(f"{key} must be a boolean (got {raw!r})")
        return default
