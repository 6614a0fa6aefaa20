"""Centralized configuration loaded from environment variables."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def safe_instance_name(instance_id: str) -> str:
    """Map an instance id onto a string usable as a file name."""
    cleaned = _UNSAFE_NAME_CHARS.sub("_", instance_id).strip(".")
    return cleaned or "instance"


class Settings(BaseSettings):
    """Supervisor-wide settings sourced from .env / environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── General ──────────────────────────────────────────────────────
    sandboxwatch_env: str = "development"
    sandboxwatch_log_level: str = "INFO"

    # ── Storage ──────────────────────────────────────────────────────
    sandboxwatch_data_dir: str = "/app/data"
    error_db_path: str = ""
    log_db_path: str = ""

    # ── Reporting ────────────────────────────────────────────────────
    status_report_interval: float = 60.0

    # ── Derived ──────────────────────────────────────────────────────
    @property
    def data_dir(self) -> Path:
        """Return the data directory, creating it if needed."""
        path = Path(self.sandboxwatch_data_dir)
        path.mkdir(parents=True, exist_ok=True)
        return path

    @property
    def error_db(self) -> Path:
        return Path(self.error_db_path) if self.error_db_path else self.data_dir / "errors.db"

    @property
    def log_db(self) -> Path:
        return Path(self.log_db_path) if self.log_db_path else self.data_dir / "logs.db"

    @property
    def status_dir(self) -> Path:
        """Directory holding one status file per supervised instance."""
        path = self.data_dir / "status"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def raw_log_path(self, instance_id: str) -> Path:
        """Raw append-only log file drained by upstream pollers."""
        return self.data_dir / f"{safe_instance_name(instance_id)}-process.log"


class MonitoringOptions(BaseModel):
    """Restart policy and output-capture tuning for one ProcessMonitor."""

    max_restarts: int = Field(default=3, ge=0)
    restart_delay: float = Field(default=1.0, ge=0)       # seconds before a restart attempt
    restart_backoff: float = Field(default=1.0, ge=1.0)   # 1.0 = fixed delay
    max_restart_delay: float = Field(default=30.0, ge=0)
    kill_timeout: float = Field(default=10.0, ge=0)       # grace window before SIGKILL
    health_check_interval: float = Field(default=0.0, ge=0)  # 0 disables the silence check
    chunk_flush_interval: float = Field(default=0.1, gt=0)
    max_chunk_lines: int = Field(default=200, ge=1)
    log_buffer_size: int = Field(default=100, ge=1)
    raw_log_max_lines: int = Field(default=1000, ge=10)
    raw_log_max_bytes: int = Field(default=1024 * 1024, ge=1024)

    def delay_for_attempt(self, attempt: int) -> float:
        """Delay before restart attempt ``attempt`` (1-based)."""
        delay = self.restart_delay * (self.restart_backoff ** max(0, attempt - 1))
        return min(delay, max(self.max_restart_delay, self.restart_delay))


class ErrorStoreOptions(BaseModel):
    """Retention and capacity of the error store."""

    max_errors: int = Field(default=1000, ge=1)
    retention_days: int = Field(default=7, ge=1)


class LogStoreOptions(BaseModel):
    """Retention and ring-buffer sizing of the log store."""

    retention_hours: int = Field(default=168, ge=1)
    log_buffer_size: int = Field(default=100, ge=1)
    sweep_interval: float = Field(default=60.0, ge=0)


DEFAULT_MONITORING_OPTIONS = MonitoringOptions()
DEFAULT_ERROR_STORE_OPTIONS = ErrorStoreOptions()
DEFAULT_LOG_STORE_OPTIONS = LogStoreOptions()


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the cached Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached Settings so the next call re-reads the environment."""
    global _settings
    _settings = None
