"""Tests for the storage engine: error dedup, sequenced logs, ring buffer, retention."""

from __future__ import annotations

import asyncio
import datetime as dt
from pathlib import Path

import pytest
import pytest_asyncio

from sandboxwatch.config import ErrorStoreOptions, LogStoreOptions, Settings
from sandboxwatch.database import SQLiteDatabase
from sandboxwatch.result import ErrorKind
from sandboxwatch.supervisor.error_store import ErrorStore, compute_error_hash, normalize_message
from sandboxwatch.supervisor.log_store import LogStore
from sandboxwatch.supervisor.models import (
    ErrorCategory,
    ErrorFilter,
    ErrorSeverity,
    LogCursor,
    LogFilter,
    LogLevel,
    LogStream,
    ParsedError,
    ProcessLog,
    SortOrder,
    utc_now,
)
from sandboxwatch.supervisor.storage import StorageEngine
from sandboxwatch.supervisor.tables import ERROR_TABLES, LOG_TABLES

INSTANCE = "inst-1"
PROCESS = "proc-inst-1-0001"


def make_error(
    message: str = "TypeError: Cannot read properties of undefined (reading 'map')",
    category: ErrorCategory = ErrorCategory.RUNTIME,
    severity: ErrorSeverity = ErrorSeverity.ERROR,
    source_file: str | None = "src/components/UserList.tsx",
    line_number: int | None = 25,
) -> ParsedError:
    return ParsedError(
        category=category,
        severity=severity,
        message=message,
        source_file=source_file,
        line_number=line_number,
        raw_output=message,
        pattern_id="js_error",
    )


def make_log(message: str, instance_id: str = INSTANCE, **kwargs) -> ProcessLog:
    return ProcessLog(instance_id=instance_id, process_id=PROCESS, message=message, **kwargs)


@pytest_asyncio.fixture
async def error_store(tmp_path: Path):
    db = SQLiteDatabase(tmp_path / "errors.db", ERROR_TABLES)
    await db.init()
    yield ErrorStore(db, ErrorStoreOptions(max_errors=3, retention_days=7))
    await db.close()


@pytest_asyncio.fixture
async def log_store(tmp_path: Path):
    db = SQLiteDatabase(tmp_path / "logs.db", LOG_TABLES)
    await db.init()
    yield LogStore(db, LogStoreOptions(retention_hours=24))
    await db.close()


# ── Fingerprints ──────────────────────────────────────────────────────

class TestErrorHash:
    """Fingerprints ignore run-specific noise and nothing else."""

    def test_hash_is_stable_and_short(self) -> None:
        first = compute_error_hash(make_error())
        assert first == compute_error_hash(make_error())
        assert len(first) == 16

    def test_dynamic_tokens_do_not_change_hash(self) -> None:
        a = make_error("Request 1234 failed at 2024-05-01T10:00:00Z (id 6f1c2a3b-0d4e-4f5a-8b6c-7d8e9f0a1b2c)")
        b = make_error("Request 98 failed at 2025-12-31T23:59:59.123Z (id 00000000-1111-2222-3333-444444444444)")
        assert compute_error_hash(a) == compute_error_hash(b)

    def test_distinct_errors_get_distinct_hashes(self) -> None:
        base = make_error()
        assert compute_error_hash(base) != compute_error_hash(make_error(category=ErrorCategory.BUILD))
        assert compute_error_hash(base) != compute_error_hash(make_error(line_number=26))
        assert compute_error_hash(base) != compute_error_hash(make_error(source_file="src/App.tsx"))
        assert compute_error_hash(base) != compute_error_hash(make_error("ReferenceError: x is not defined"))

    def test_normalize_message(self) -> None:
        assert normalize_message("Timeout  after 3000ms at 0x7ffd1234") == "timeout after <n>ms at <addr>"


# ── Errors ────────────────────────────────────────────────────────────

class TestErrorStorage:
    """Deduplicated error rows through the storage facade."""

    @pytest.mark.asyncio
    async def test_repeat_error_bumps_count(self, storage: StorageEngine) -> None:
        first = await storage.store_error(INSTANCE, PROCESS, make_error())
        second = await storage.store_error(INSTANCE, "proc-inst-1-0002", make_error())
        assert first.success and first.data.is_new and first.data.occurrence_count == 1
        assert second.success and not second.data.is_new and second.data.occurrence_count == 2
        assert first.data.error_hash == second.data.error_hash

        errors = (await storage.get_errors(INSTANCE)).data
        assert len(errors) == 1
        assert errors[0].occurrence_count == 2
        assert errors[0].process_id == "proc-inst-1-0002"
        assert errors[0].first_occurrence <= errors[0].last_occurrence

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_never_lose_increments(self, storage: StorageEngine) -> None:
        results = await asyncio.gather(
            storage.store_error(INSTANCE, PROCESS, make_error()),
            storage.store_error(INSTANCE, PROCESS, make_error()),
        )
        assert all(result.success for result in results)
        assert sorted(result.data.is_new for result in results) == [False, True]

        errors = (await storage.get_errors(INSTANCE)).data
        assert len(errors) == 1
        assert errors[0].occurrence_count == 2

    @pytest.mark.asyncio
    async def test_instances_are_isolated(self, storage: StorageEngine) -> None:
        await storage.store_error(INSTANCE, PROCESS, make_error())
        other = await storage.store_error("inst-2", "proc-inst-2-0001", make_error())
        assert other.data.is_new
        assert len((await storage.get_errors("inst-2")).data) == 1

    @pytest.mark.asyncio
    async def test_clear_errors_with_nothing_stored(self, storage: StorageEngine) -> None:
        result = await storage.clear_errors(INSTANCE)
        assert result.success
        assert result.data == 0

    @pytest.mark.asyncio
    async def test_clear_errors_returns_count(self, storage: StorageEngine) -> None:
        await storage.store_error(INSTANCE, PROCESS, make_error())
        await storage.store_error(INSTANCE, PROCESS, make_error("ReferenceError: y is not defined"))
        assert (await storage.clear_errors(INSTANCE)).data == 2
        assert (await storage.get_errors(INSTANCE)).data == []

    @pytest.mark.asyncio
    async def test_query_filters_and_summary(self, storage: StorageEngine) -> None:
        await storage.store_error(INSTANCE, PROCESS, make_error())
        await storage.store_error(INSTANCE, PROCESS, make_error(
            "Failed to compile", category=ErrorCategory.BUILD, source_file=None, line_number=None))
        await storage.store_error(INSTANCE, PROCESS, make_error(
            "heap out of memory", category=ErrorCategory.RESOURCE, severity=ErrorSeverity.FATAL,
            source_file=None, line_number=None))

        page = (await storage.query_errors(ErrorFilter(
            instance_id=INSTANCE, categories=[ErrorCategory.BUILD, ErrorCategory.RESOURCE]))).data
        assert {error.category for error in page.errors} == {ErrorCategory.BUILD, ErrorCategory.RESOURCE}
        assert page.summary.total_errors == 2
        assert not page.has_more

        fatal = (await storage.query_errors(ErrorFilter(
            instance_id=INSTANCE, severities=[ErrorSeverity.FATAL]))).data
        assert [error.message for error in fatal.errors] == ["heap out of memory"]

        first_page = (await storage.query_errors(ErrorFilter(instance_id=INSTANCE, limit=2))).data
        assert len(first_page.errors) == 2
        assert first_page.has_more
        assert first_page.summary.total_errors == 3

        summary = (await storage.get_error_summary(INSTANCE)).data
        assert summary.total_errors == 3
        assert summary.errors_by_category == {"runtime": 1, "build": 1, "resource": 1}
        assert summary.errors_by_severity == {"error": 2, "fatal": 1}

    @pytest.mark.asyncio
    async def test_query_time_window(self, storage: StorageEngine) -> None:
        await storage.store_error(INSTANCE, PROCESS, make_error())
        future = utc_now() + dt.timedelta(hours=1)
        page = (await storage.query_errors(ErrorFilter(instance_id=INSTANCE, since=future))).data
        assert page.errors == []
        page = (await storage.query_errors(ErrorFilter(instance_id=INSTANCE, until=future))).data
        assert len(page.errors) == 1


class TestErrorRetention:
    """Capacity eviction and age-based expiry on the raw error store."""

    @pytest.mark.asyncio
    async def test_oldest_errors_are_evicted_over_cap(self, error_store: ErrorStore) -> None:
        start = utc_now()
        for idx in range(5):
            await error_store.upsert(INSTANCE, PROCESS, make_error(f"Error number {chr(65 + idx)}"),
                                     start + dt.timedelta(seconds=idx))
        errors = await error_store.list_errors(INSTANCE, start + dt.timedelta(seconds=10))
        assert [error.message for error in errors] == ["Error number E", "Error number D", "Error number C"]

    @pytest.mark.asyncio
    async def test_expired_errors_are_hidden_and_purged(self, error_store: ErrorStore) -> None:
        now = utc_now()
        await error_store.upsert(INSTANCE, PROCESS, make_error(), now - dt.timedelta(days=8))
        assert await error_store.list_errors(INSTANCE, now) == []
        assert (await error_store.summary(INSTANCE, now)).total_errors == 0
        assert await error_store.purge_expired(now) == 1

    @pytest.mark.asyncio
    async def test_expired_row_restarts_count(self, error_store: ErrorStore) -> None:
        now = utc_now()
        await error_store.upsert(INSTANCE, PROCESS, make_error(), now - dt.timedelta(days=8))
        again = await error_store.upsert(INSTANCE, PROCESS, make_error(), now)
        assert again.is_new
        assert again.occurrence_count == 1
        errors = await error_store.list_errors(INSTANCE, now)
        assert errors[0].first_occurrence == now


# ── Logs ──────────────────────────────────────────────────────────────

class TestLogStorage:
    """Sequenced log rows, cursors and the in-memory ring buffer."""

    @pytest.mark.asyncio
    async def test_sequences_are_gap_free_per_instance(self, storage: StorageEngine) -> None:
        sequences = [(await storage.store_log(make_log(f"line {i}"))).data for i in range(5)]
        other = (await storage.store_log(make_log("other", instance_id="inst-2"))).data
        assert sequences == [1, 2, 3, 4, 5]
        assert other == 1

    @pytest.mark.asyncio
    async def test_cursor_reads_every_log_once(self, storage: StorageEngine) -> None:
        for i in range(250):
            await storage.store_log(make_log(f"line {i}"))

        cursor = LogCursor(instance_id=INSTANCE, last_sequence=0)
        seen: list[int] = []
        pages = 0
        while True:
            tail = (await storage.get_logs_since_cursor(cursor, limit=100)).data
            seen.extend(log.sequence for log in tail.logs)
            cursor = tail.cursor
            pages += 1
            if not tail.has_more:
                break
        assert seen == list(range(1, 251))
        assert pages == 3
        assert cursor.last_sequence == 250

        empty = (await storage.get_logs_since_cursor(cursor)).data
        assert empty.logs == []
        assert empty.cursor.last_sequence == 250

    @pytest.mark.asyncio
    async def test_cursor_limit_must_be_positive(self, storage: StorageEngine) -> None:
        result = await storage.get_logs_since_cursor(LogCursor(instance_id=INSTANCE), limit=0)
        assert not result.success
        assert result.kind == ErrorKind.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_ring_buffer_keeps_newest(self, storage: StorageEngine) -> None:
        for i in range(150):
            await storage.store_log(make_log(f"line {i}"))
        recent = storage.get_recent_logs(INSTANCE, 50)
        assert len(recent) == 50
        assert [log.sequence for log in recent] == list(range(150, 100, -1))
        assert len(storage.get_recent_logs(INSTANCE, 500)) == 100
        assert storage.get_recent_logs("unknown", 10) == []

    @pytest.mark.asyncio
    async def test_recent_logs_fall_back_to_database(self, storage: StorageEngine, settings: Settings) -> None:
        for i in range(5):
            await storage.store_log(make_log(f"line {i}"))
        reader = StorageEngine(settings.error_db, settings.log_db)
        assert (await reader.init()).success
        try:
            recent = (await reader.fetch_recent_logs(INSTANCE, 3)).data
            assert [log.message for log in recent] == ["line 4", "line 3", "line 2"]
        finally:
            await reader.close()

    @pytest.mark.asyncio
    async def test_query_filters_and_order(self, storage: StorageEngine) -> None:
        await storage.store_log(make_log("starting"))
        await storage.store_log(make_log("TypeError: boom", level=LogLevel.ERROR, stream=LogStream.STDERR))
        await storage.store_log(make_log("ready"))

        page = (await storage.get_logs(LogFilter(instance_id=INSTANCE, levels=[LogLevel.ERROR]))).data
        assert [log.message for log in page.logs] == ["TypeError: boom"]
        assert page.total_count == 1

        page = (await storage.get_logs(LogFilter(instance_id=INSTANCE, streams=[LogStream.STDOUT],
                                                 sort_order=SortOrder.ASC))).data
        assert [log.message for log in page.logs] == ["starting", "ready"]

        page = (await storage.get_logs(LogFilter(instance_id=INSTANCE, limit=2))).data
        assert [log.sequence for log in page.logs] == [3, 2]
        assert page.has_more
        assert page.cursor.last_sequence == 3

    @pytest.mark.asyncio
    async def test_log_stats(self, storage: StorageEngine) -> None:
        await storage.store_log(make_log("a"))
        await storage.store_log(make_log("b", level=LogLevel.WARN, stream=LogStream.STDERR))
        stats = (await storage.get_log_stats(INSTANCE)).data
        assert stats.total_logs == 2
        assert stats.logs_by_level == {"info": 1, "warn": 1}
        assert stats.logs_by_stream == {"stdout": 1, "stderr": 1}
        assert stats.last_sequence == 2
        assert stats.oldest_log <= stats.newest_log

    @pytest.mark.asyncio
    async def test_clear_logs_keeps_sequence(self, storage: StorageEngine) -> None:
        for i in range(3):
            await storage.store_log(make_log(f"line {i}"))
        cleared = await storage.clear_logs(INSTANCE)
        assert cleared.data == 3
        assert storage.get_recent_logs(INSTANCE) == []
        assert (await storage.store_log(make_log("after clear"))).data == 4

    @pytest.mark.asyncio
    async def test_expired_logs_are_purged(self, log_store: LogStore) -> None:
        await log_store.append(make_log("old", timestamp=utc_now() - dt.timedelta(hours=30)))
        await log_store.append(make_log("fresh"))
        assert await log_store.purge_expired(utc_now()) == 1
        assert [log.message for log in await log_store.recent(INSTANCE, 10)] == ["fresh"]


# ── Failure and recovery ──────────────────────────────────────────────

class TestStorageFailures:
    """Storage problems come back as results, never as exceptions."""

    @pytest.mark.asyncio
    async def test_closed_engine_reports_storage_failure(self, settings: Settings) -> None:
        engine = StorageEngine(settings.error_db, settings.log_db)
        result = await engine.store_error(INSTANCE, PROCESS, make_error())
        assert not result.success
        assert result.kind == ErrorKind.STORAGE
        logged = await engine.store_log(make_log("x"))
        assert not logged.success
        assert logged.kind == ErrorKind.STORAGE

    @pytest.mark.asyncio
    async def test_corrupted_file_is_recovered(self, settings: Settings) -> None:
        settings.error_db.write_bytes(b"this is not a sqlite database " * 64)
        engine = StorageEngine(settings.error_db, settings.log_db)
        try:
            init = await engine.init()
            assert not init.success
            assert init.kind == ErrorKind.STORAGE

            recovered = await engine.reinitialize()
            assert recovered.success
            assert any(".corrupt-" in path for path in recovered.data)

            stored = await engine.store_error(INSTANCE, PROCESS, make_error())
            assert stored.success and stored.data.is_new
        finally:
            await engine.close()
