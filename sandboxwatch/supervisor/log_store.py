"""Sequenced log persistence with cursor-based incremental reads.

Each instance has a counter row in ``log_sequences``. An append bumps the
counter and inserts the log row in one transaction, under a write lock,
so sequence numbers are strictly increasing and commit in order. Readers
polling with ``since()`` therefore never see a gap that fills in later.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from typing import Optional

from sqlalchemy import delete, func, insert, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from sandboxwatch.config import LogStoreOptions
from sandboxwatch.database import SQLiteDatabase
from sandboxwatch.logging_config import get_logger
from sandboxwatch.supervisor.models import (
    LogCursor,
    LogFilter,
    LogPage,
    LogStats,
    LogTail,
    ProcessLog,
    SortOrder,
    utc_now,
)
from sandboxwatch.supervisor.tables import LogSequenceRecord, ProcessLogRecord

logger = get_logger(__name__)


class LogStore:
    """Log table operations. Raises on storage failure; the facade wraps results."""

    def __init__(self, db: SQLiteDatabase, options: LogStoreOptions) -> None:
        self._db = db
        self._options = options
        self._write_lock = asyncio.Lock()

    def cutoff(self, now: dt.datetime) -> dt.datetime:
        return now - dt.timedelta(hours=self._options.retention_hours)

    async def append(self, log: ProcessLog) -> ProcessLog:
        """Persist ``log`` and return a copy carrying its assigned sequence."""
        bump = sqlite_insert(LogSequenceRecord).values(instance_id=log.instance_id, last_sequence=1)
        bump = bump.on_conflict_do_update(
            index_elements=["instance_id"],
            set_={"last_sequence": LogSequenceRecord.last_sequence + 1},
        ).returning(LogSequenceRecord.last_sequence)

        async with self._write_lock:
            async with self._db.session() as session:
                sequence = (await session.execute(bump)).scalar_one()
                await session.execute(
                    insert(ProcessLogRecord).values(
                        instance_id=log.instance_id,
                        process_id=log.process_id,
                        level=str(log.level),
                        message=log.message,
                        stream=str(log.stream),
                        source=log.source,
                        timestamp=log.timestamp,
                        sequence=sequence,
                    )
                )
        return log.model_copy(update={"sequence": sequence})

    async def last_sequence(self, instance_id: str) -> int:
        async with self._db.session() as session:
            value = (await session.execute(
                select(LogSequenceRecord.last_sequence).where(LogSequenceRecord.instance_id == instance_id)
            )).scalar_one_or_none()
        return value or 0

    async def query(self, log_filter: LogFilter) -> LogPage:
        conditions = [ProcessLogRecord.instance_id == log_filter.instance_id]
        if log_filter.levels:
            conditions.append(ProcessLogRecord.level.in_([str(level) for level in log_filter.levels]))
        if log_filter.streams:
            conditions.append(ProcessLogRecord.stream.in_([str(stream) for stream in log_filter.streams]))
        if log_filter.since is not None:
            conditions.append(ProcessLogRecord.timestamp >= log_filter.since)
        if log_filter.until is not None:
            conditions.append(ProcessLogRecord.timestamp <= log_filter.until)

        order = (
            ProcessLogRecord.sequence.asc()
            if log_filter.sort_order == SortOrder.ASC
            else ProcessLogRecord.sequence.desc()
        )
        query = (
            select(ProcessLogRecord)
            .where(*conditions)
            .order_by(order)
            .offset(log_filter.offset)
            .limit(log_filter.limit)
        )
        async with self._db.session() as session:
            total = (await session.execute(
                select(func.count()).select_from(ProcessLogRecord).where(*conditions)
            )).scalar_one()
            rows = (await session.execute(query)).scalars().all()

        logs = [ProcessLog.model_validate(row) for row in rows]
        last = max((log.sequence for log in logs), default=None)
        if last is None:
            last = await self.last_sequence(log_filter.instance_id)
        return LogPage(
            logs=logs,
            cursor=LogCursor(instance_id=log_filter.instance_id, last_sequence=last),
            has_more=log_filter.offset + len(logs) < total,
            total_count=total,
        )

    async def since(self, cursor: LogCursor, limit: int) -> LogTail:
        """Logs with ``sequence > cursor.last_sequence``, ascending, at most ``limit``."""
        query = (
            select(ProcessLogRecord)
            .where(
                ProcessLogRecord.instance_id == cursor.instance_id,
                ProcessLogRecord.sequence > cursor.last_sequence,
            )
            .order_by(ProcessLogRecord.sequence.asc())
            .limit(limit + 1)
        )
        async with self._db.session() as session:
            rows = (await session.execute(query)).scalars().all()

        has_more = len(rows) > limit
        logs = [ProcessLog.model_validate(row) for row in rows[:limit]]
        last = logs[-1].sequence if logs else cursor.last_sequence
        return LogTail(
            logs=logs,
            cursor=LogCursor(instance_id=cursor.instance_id, last_sequence=last, last_retrieved=utc_now()),
            has_more=has_more,
        )

    async def recent(self, instance_id: str, count: int) -> list[ProcessLog]:
        """Newest ``count`` logs straight from the table, newest first."""
        query = (
            select(ProcessLogRecord)
            .where(ProcessLogRecord.instance_id == instance_id)
            .order_by(ProcessLogRecord.sequence.desc())
            .limit(count)
        )
        async with self._db.session() as session:
            rows = (await session.execute(query)).scalars().all()
        return [ProcessLog.model_validate(row) for row in rows]

    async def stats(self, instance_id: str) -> LogStats:
        where = ProcessLogRecord.instance_id == instance_id
        async with self._db.session() as session:
            by_level = (await session.execute(
                select(ProcessLogRecord.level, func.count()).where(where).group_by(ProcessLogRecord.level)
            )).all()
            by_stream = (await session.execute(
                select(ProcessLogRecord.stream, func.count()).where(where).group_by(ProcessLogRecord.stream)
            )).all()
            oldest, newest = (await session.execute(
                select(func.min(ProcessLogRecord.timestamp), func.max(ProcessLogRecord.timestamp)).where(where)
            )).one()
        return LogStats(
            total_logs=sum(count for _, count in by_level),
            logs_by_level={level: count for level, count in by_level},
            logs_by_stream={stream: count for stream, count in by_stream},
            oldest_log=oldest,
            newest_log=newest,
            last_sequence=await self.last_sequence(instance_id),
        )

    async def clear(self, instance_id: str) -> int:
        """Delete the instance's logs. The sequence counter is kept so old cursors stay valid."""
        async with self._write_lock:
            async with self._db.session() as session:
                result = await session.execute(
                    delete(ProcessLogRecord).where(ProcessLogRecord.instance_id == instance_id)
                )
        cleared = result.rowcount or 0
        logger.info("logs_cleared", instance_id=instance_id, count=cleared)
        return cleared

    async def purge_expired(self, now: dt.datetime, instance_id: Optional[str] = None) -> int:
        conditions = [ProcessLogRecord.timestamp < self.cutoff(now)]
        if instance_id is not None:
            conditions.append(ProcessLogRecord.instance_id == instance_id)
        async with self._write_lock:
            async with self._db.session() as session:
                result = await session.execute(delete(ProcessLogRecord).where(*conditions))
        purged = result.rowcount or 0
        if purged:
            logger.info("logs_purged", count=purged, retention_hours=self._options.retention_hours)
        return purged
