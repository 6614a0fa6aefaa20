"""Domain records shared by the classifier, the stores, and the monitor."""

from __future__ import annotations

import datetime as dt
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> dt.datetime:
    """Current UTC time as a naive datetime (the stores keep naive UTC)."""
    return dt.datetime.now(dt.UTC).replace(tzinfo=None)


class ProcessState(StrEnum):
    """Lifecycle state of a supervised child process."""
    STARTING = "starting"
    RUNNING = "running"
    CRASHED = "crashed"
    STOPPED = "stopped"
    RESTARTING = "restarting"


class ErrorCategory(StrEnum):
    SYNTAX = "syntax"
    RUNTIME = "runtime"
    BUILD = "build"
    DEPENDENCY = "dependency"
    NETWORK = "network"
    PERMISSION = "permission"
    RESOURCE = "resource"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


class ErrorSeverity(StrEnum):
    WARNING = "warning"
    ERROR = "error"
    FATAL = "fatal"


class LogLevel(StrEnum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"


class LogStream(StrEnum):
    STDOUT = "stdout"
    STDERR = "stderr"


class SortOrder(StrEnum):
    ASC = "asc"
    DESC = "desc"


class ProcessInfo(BaseModel):
    """One monitored child process. ``id`` changes on every launch."""

    id: str
    instance_id: str
    command: str
    args: list[str] = Field(default_factory=list)
    cwd: str
    state: ProcessState = ProcessState.STARTING
    start_time: Optional[dt.datetime] = None
    end_time: Optional[dt.datetime] = None
    restart_count: int = 0
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    last_error: Optional[str] = None

    @property
    def command_line(self) -> str:
        return " ".join([self.command, *self.args])


class ParsedError(BaseModel):
    """Classifier output for one detected error occurrence."""

    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    source_file: Optional[str] = None
    line_number: Optional[int] = None
    column_number: Optional[int] = None
    stack_trace: Optional[str] = None
    raw_output: str = ""
    pattern_id: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)


class StoredError(BaseModel):
    """Persisted, deduplicated error row."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    instance_id: str
    process_id: str
    error_hash: str
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    source_file: Optional[str] = None
    line_number: Optional[int] = None
    column_number: Optional[int] = None
    stack_trace: Optional[str] = None
    raw_output: str = ""
    pattern_id: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)
    first_occurrence: dt.datetime
    last_occurrence: dt.datetime
    occurrence_count: int
    created_at: dt.datetime


class ErrorUpsert(BaseModel):
    """Outcome of ``store_error``: a new row or a bumped occurrence count."""

    is_new: bool
    error_hash: str
    occurrence_count: int


class ErrorSummary(BaseModel):
    total_errors: int = 0
    errors_by_category: dict[str, int] = Field(default_factory=dict)
    errors_by_severity: dict[str, int] = Field(default_factory=dict)


class ErrorFilter(BaseModel):
    instance_id: str
    categories: Optional[list[ErrorCategory]] = None
    severities: Optional[list[ErrorSeverity]] = None
    since: Optional[dt.datetime] = None
    until: Optional[dt.datetime] = None
    limit: int = Field(default=100, ge=1)
    offset: int = Field(default=0, ge=0)


class ErrorPage(BaseModel):
    errors: list[StoredError]
    summary: ErrorSummary
    has_more: bool


class ProcessLog(BaseModel):
    """One captured line of child output. ``sequence`` is assigned on append."""

    model_config = ConfigDict(from_attributes=True)

    instance_id: str
    process_id: str
    level: LogLevel = LogLevel.INFO
    message: str
    stream: LogStream = LogStream.STDOUT
    source: Optional[str] = None
    timestamp: dt.datetime = Field(default_factory=utc_now)
    sequence: Optional[int] = None


class LogCursor(BaseModel):
    """Client-side position for gap-free incremental log reads."""

    instance_id: str
    last_sequence: int = Field(default=0, ge=0)
    last_retrieved: dt.datetime = Field(default_factory=utc_now)


class LogFilter(BaseModel):
    instance_id: str
    levels: Optional[list[LogLevel]] = None
    streams: Optional[list[LogStream]] = None
    since: Optional[dt.datetime] = None
    until: Optional[dt.datetime] = None
    limit: int = Field(default=100, ge=1)
    offset: int = Field(default=0, ge=0)
    sort_order: SortOrder = SortOrder.DESC


class LogPage(BaseModel):
    logs: list[ProcessLog]
    cursor: LogCursor
    has_more: bool
    total_count: int


class LogTail(BaseModel):
    logs: list[ProcessLog]
    cursor: LogCursor
    has_more: bool


class LogStats(BaseModel):
    total_logs: int = 0
    logs_by_level: dict[str, int] = Field(default_factory=dict)
    logs_by_stream: dict[str, int] = Field(default_factory=dict)
    oldest_log: Optional[dt.datetime] = None
    newest_log: Optional[dt.datetime] = None
    last_sequence: int = 0
