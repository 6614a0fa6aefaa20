"""Storage engine facade: error store, log store, ring buffer, retention.

Every public operation returns a ``Result``. Storage-layer failures
(unreadable file, locked database, closed engine) come back as
``Result.fail(kind=storage)`` and never raise into the monitor; the caller
can recover with ``reinitialize()``.
"""

from __future__ import annotations

import time
from collections import deque
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sandboxwatch.config import (
    DEFAULT_ERROR_STORE_OPTIONS,
    DEFAULT_LOG_STORE_OPTIONS,
    ErrorStoreOptions,
    LogStoreOptions,
    Settings,
    get_settings,
)
from sandboxwatch.database import STORAGE_ERRORS, SQLiteDatabase
from sandboxwatch.logging_config import get_logger
from sandboxwatch.result import ErrorKind, Result
from sandboxwatch.supervisor.error_store import ErrorStore
from sandboxwatch.supervisor.log_store import LogStore
from sandboxwatch.supervisor.models import (
    ErrorFilter,
    ErrorPage,
    ErrorSummary,
    ErrorUpsert,
    LogCursor,
    LogFilter,
    LogPage,
    LogStats,
    LogTail,
    ParsedError,
    ProcessLog,
    StoredError,
    utc_now,
)
from sandboxwatch.supervisor.tables import ERROR_TABLES, LOG_TABLES

logger = get_logger(__name__)

T = TypeVar("T")


class StorageEngine:
    """Durable errors and logs for any number of instances."""

    def __init__(
        self,
        error_db_path: Path,
        log_db_path: Path,
        error_options: ErrorStoreOptions = DEFAULT_ERROR_STORE_OPTIONS,
        log_options: LogStoreOptions = DEFAULT_LOG_STORE_OPTIONS,
    ) -> None:
        self.error_options = error_options
        self.log_options = log_options
        self._error_db = SQLiteDatabase(error_db_path, ERROR_TABLES)
        self._log_db = SQLiteDatabase(log_db_path, LOG_TABLES)
        self._errors = ErrorStore(self._error_db, error_options)
        self._logs = LogStore(self._log_db, log_options)
        self._buffers: dict[str, deque[ProcessLog]] = {}
        self._instances: set[str] = set()
        self._last_sweep = 0.0

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        error_options: ErrorStoreOptions = DEFAULT_ERROR_STORE_OPTIONS,
        log_options: LogStoreOptions = DEFAULT_LOG_STORE_OPTIONS,
    ) -> StorageEngine:
        settings = settings or get_settings()
        return cls(settings.error_db, settings.log_db, error_options, log_options)

    async def _run(self, operation: str, call: Callable[[], Awaitable[T]], **context: Any) -> Result[T]:
        try:
            return Result.ok(await call())
        except STORAGE_ERRORS as exc:
            logger.warning("storage_operation_failed", operation=operation, error=str(exc),
                           error_type=type(exc).__name__, **context)
            return Result.fail(exc, ErrorKind.STORAGE)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def init(self) -> Result[None]:
        async def _init() -> None:
            await self._error_db.init()
            await self._log_db.init()

        result = await self._run("init", _init)
        if result.success:
            logger.info("storage_ready", error_db=str(self._error_db.path), log_db=str(self._log_db.path))
        return result

    async def close(self) -> None:
        await self._error_db.close()
        await self._log_db.close()

    async def reinitialize(self) -> Result[list[str]]:
        """Move unreadable database files aside and recreate empty stores."""

        async def _reset() -> list[str]:
            moved = [await self._error_db.reinitialize(), await self._log_db.reinitialize()]
            self._buffers.clear()
            return [str(path) for path in moved if path is not None]

        return await self._run("reinitialize", _reset)

    # ── Errors ───────────────────────────────────────────────────────

    async def store_error(self, instance_id: str, process_id: str, error: ParsedError) -> Result[ErrorUpsert]:
        self._instances.add(instance_id)
        result = await self._run(
            "store_error",
            lambda: self._errors.upsert(instance_id, process_id, error, utc_now()),
            instance_id=instance_id,
        )
        await self._maybe_sweep()
        return result

    async def get_errors(self, instance_id: str) -> Result[list[StoredError]]:
        return await self._run("get_errors", lambda: self._errors.list_errors(instance_id, utc_now()),
                               instance_id=instance_id)

    async def query_errors(self, error_filter: ErrorFilter) -> Result[ErrorPage]:
        return await self._run("query_errors", lambda: self._errors.query(error_filter, utc_now()),
                               instance_id=error_filter.instance_id)

    async def get_error_summary(self, instance_id: str) -> Result[ErrorSummary]:
        return await self._run("get_error_summary", lambda: self._errors.summary(instance_id, utc_now()),
                               instance_id=instance_id)

    async def clear_errors(self, instance_id: str) -> Result[int]:
        return await self._run("clear_errors", lambda: self._errors.clear(instance_id), instance_id=instance_id)

    # ── Logs ─────────────────────────────────────────────────────────

    async def store_log(self, log: ProcessLog) -> Result[int]:
        self._instances.add(log.instance_id)
        result = await self._run("store_log", lambda: self._logs.append(log), instance_id=log.instance_id)
        if not result.success:
            return Result.fail(result.error or "store_log failed", ErrorKind.STORAGE)

        stored = result.data
        buffer = self._buffers.get(log.instance_id)
        if buffer is None:
            buffer = self._buffers[log.instance_id] = deque(maxlen=self.log_options.log_buffer_size)
        buffer.append(stored)
        await self._maybe_sweep()
        return Result.ok(stored.sequence)

    async def get_logs(self, log_filter: LogFilter) -> Result[LogPage]:
        return await self._run("get_logs", lambda: self._logs.query(log_filter), instance_id=log_filter.instance_id)

    async def get_logs_since_cursor(self, cursor: LogCursor, limit: int = 100) -> Result[LogTail]:
        if limit < 1:
            return Result.fail("limit must be at least 1", ErrorKind.INVALID_INPUT)
        return await self._run("get_logs_since_cursor", lambda: self._logs.since(cursor, limit),
                               instance_id=cursor.instance_id)

    def get_recent_logs(self, instance_id: str, count: int = 50) -> list[ProcessLog]:
        """Newest-first tail from the in-memory ring buffer (at most ``log_buffer_size``)."""
        buffer = self._buffers.get(instance_id)
        if not buffer or count <= 0:
            return []
        recent = list(buffer)[-count:]
        recent.reverse()
        return recent

    async def fetch_recent_logs(self, instance_id: str, count: int = 50) -> Result[list[ProcessLog]]:
        """Ring buffer when this process has one, otherwise the newest rows from the store."""
        recent = self.get_recent_logs(instance_id, count)
        if recent or count <= 0:
            return Result.ok(recent)
        return await self._run("fetch_recent_logs", lambda: self._logs.recent(instance_id, count),
                               instance_id=instance_id)

    async def get_log_stats(self, instance_id: str) -> Result[LogStats]:
        return await self._run("get_log_stats", lambda: self._logs.stats(instance_id), instance_id=instance_id)

    async def clear_logs(self, instance_id: str) -> Result[int]:
        result = await self._run("clear_logs", lambda: self._logs.clear(instance_id), instance_id=instance_id)
        if result.success:
            self._buffers.pop(instance_id, None)
        return result

    # ── Retention ────────────────────────────────────────────────────

    async def sweep(self) -> Result[dict[str, int]]:
        """Purge errors past ``retention_days`` and logs past ``retention_hours``.

        Only instances written through this engine are swept, so engines with
        different retention settings can share a database file. An engine that
        has written nothing sweeps every instance.
        """

        async def _sweep() -> dict[str, int]:
            now = utc_now()
            scope = sorted(self._instances) or [None]
            purged = {"errors": 0, "logs": 0}
            for instance_id in scope:
                purged["errors"] += await self._errors.purge_expired(now, instance_id)
                purged["logs"] += await self._logs.purge_expired(now, instance_id)
            return purged

        self._last_sweep = time.monotonic()
        return await self._run("sweep", _sweep)

    async def _maybe_sweep(self) -> None:
        if time.monotonic() - self._last_sweep < self.log_options.sweep_interval:
            return
        await self.sweep()
