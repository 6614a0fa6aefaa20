"""Deduplicated error persistence.

Errors are fingerprinted by category, normalized message, source file and
line. The first detection inserts a row; every later detection of the same
fingerprint bumps ``occurrence_count`` in the same SQL statement
(``INSERT ... ON CONFLICT DO UPDATE ... RETURNING``), so concurrent
detections cannot create duplicate rows or lose an increment.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import hashlib
import re
from typing import Optional

from sqlalchemy import and_, case, delete, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from sandboxwatch.config import ErrorStoreOptions
from sandboxwatch.database import SQLiteDatabase
from sandboxwatch.logging_config import get_logger
from sandboxwatch.supervisor.models import (
    ErrorFilter,
    ErrorPage,
    ErrorSummary,
    ErrorUpsert,
    ParsedError,
    StoredError,
)
from sandboxwatch.supervisor.tables import StoredErrorRecord

logger = get_logger(__name__)

# Order matters: timestamps before bare times, UUIDs and hex before digits.
_DYNAMIC_TOKENS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\d{4}-\d{2}-\d{2}[t ]\d{2}:\d{2}:\d{2}(?:[.,]\d+)?(?:z|[+-]\d{2}:?\d{2})?"), "<ts>"),
    (re.compile(r"\b\d{1,2}:\d{2}:\d{2}(?:\.\d+)?\b"), "<time>"),
    (re.compile(r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b"), "<uuid>"),
    (re.compile(r"\b0x[0-9a-f]+\b"), "<addr>"),
    (re.compile(r"\b[0-9a-f]{16,}\b"), "<hex>"),
    (re.compile(r"\d+"), "<n>"),
)
_SPACES = re.compile(r"\s+")


def normalize_message(message: str) -> str:
    """Lower-case the message and replace run-specific tokens with placeholders."""
    text = message.lower()
    for pattern, placeholder in _DYNAMIC_TOKENS:
        text = pattern.sub(placeholder, text)
    return _SPACES.sub(" ", text).strip()


def compute_error_hash(error: ParsedError) -> str:
    """Stable fingerprint of a logical error, independent of when it happened."""
    parts = (
        str(error.category),
        normalize_message(error.message),
        error.source_file or "",
        str(error.line_number) if error.line_number is not None else "",
    )
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:16]


class ErrorStore:
    """Error table operations. Raises on storage failure; the facade wraps results."""

    def __init__(self, db: SQLiteDatabase, options: ErrorStoreOptions) -> None:
        self._db = db
        self._options = options
        self._write_lock = asyncio.Lock()

    def cutoff(self, now: dt.datetime) -> dt.datetime:
        return now - dt.timedelta(days=self._options.retention_days)

    async def upsert(
        self,
        instance_id: str,
        process_id: str,
        error: ParsedError,
        now: dt.datetime,
    ) -> ErrorUpsert:
        error_hash = compute_error_hash(error)
        table = StoredErrorRecord
        stmt = sqlite_insert(table).values(
            instance_id=instance_id,
            process_id=process_id,
            error_hash=error_hash,
            category=str(error.category),
            severity=str(error.severity),
            message=error.message,
            source_file=error.source_file,
            line_number=error.line_number,
            column_number=error.column_number,
            stack_trace=error.stack_trace,
            raw_output=error.raw_output,
            pattern_id=error.pattern_id,
            context=error.context,
            first_occurrence=now,
            last_occurrence=now,
            occurrence_count=1,
            created_at=now,
        )
        # An expired row that was not swept yet starts a fresh count.
        expired = table.last_occurrence < self.cutoff(now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["instance_id", "error_hash"],
            set_={
                "occurrence_count": case((expired, 1), else_=table.occurrence_count + 1),
                "first_occurrence": case((expired, stmt.excluded.first_occurrence), else_=table.first_occurrence),
                "last_occurrence": stmt.excluded.last_occurrence,
                "process_id": stmt.excluded.process_id,
                "severity": stmt.excluded.severity,
                "raw_output": stmt.excluded.raw_output,
                "stack_trace": func.coalesce(stmt.excluded.stack_trace, table.stack_trace),
            },
        ).returning(table.occurrence_count)

        async with self._write_lock:
            async with self._db.session() as session:
                occurrence_count = (await session.execute(stmt)).scalar_one()
                is_new = occurrence_count == 1
                if is_new:
                    await self._evict_over_cap(session, instance_id)

        if is_new:
            logger.info("error_stored", instance_id=instance_id, error_hash=error_hash,
                        category=str(error.category), severity=str(error.severity))
        else:
            logger.debug("error_occurrence", instance_id=instance_id, error_hash=error_hash,
                         occurrence_count=occurrence_count)
        return ErrorUpsert(is_new=is_new, error_hash=error_hash, occurrence_count=occurrence_count)

    async def _evict_over_cap(self, session, instance_id: str) -> None:
        total = (await session.execute(
            select(func.count()).select_from(StoredErrorRecord)
            .where(StoredErrorRecord.instance_id == instance_id)
        )).scalar_one()
        excess = total - self._options.max_errors
        if excess <= 0:
            return
        oldest = (
            select(StoredErrorRecord.id)
            .where(StoredErrorRecord.instance_id == instance_id)
            .order_by(StoredErrorRecord.first_occurrence.asc(), StoredErrorRecord.id.asc())
            .limit(excess)
        )
        await session.execute(delete(StoredErrorRecord).where(StoredErrorRecord.id.in_(oldest)))
        logger.info("errors_evicted", instance_id=instance_id, count=excess)

    def _conditions(self, instance_id: str, now: dt.datetime) -> list:
        return [
            StoredErrorRecord.instance_id == instance_id,
            StoredErrorRecord.last_occurrence >= self.cutoff(now),
        ]

    async def list_errors(self, instance_id: str, now: dt.datetime) -> list[StoredError]:
        """All live errors for the instance, most recently seen first."""
        query = (
            select(StoredErrorRecord)
            .where(*self._conditions(instance_id, now))
            .order_by(StoredErrorRecord.last_occurrence.desc(), StoredErrorRecord.id.desc())
        )
        async with self._db.session() as session:
            rows = (await session.execute(query)).scalars().all()
        return [StoredError.model_validate(row) for row in rows]

    async def query(self, error_filter: ErrorFilter, now: dt.datetime) -> ErrorPage:
        conditions = self._conditions(error_filter.instance_id, now)
        if error_filter.categories:
            conditions.append(StoredErrorRecord.category.in_([str(c) for c in error_filter.categories]))
        if error_filter.severities:
            conditions.append(StoredErrorRecord.severity.in_([str(s) for s in error_filter.severities]))
        if error_filter.since is not None:
            conditions.append(StoredErrorRecord.last_occurrence >= error_filter.since)
        if error_filter.until is not None:
            conditions.append(StoredErrorRecord.last_occurrence <= error_filter.until)

        query = (
            select(StoredErrorRecord)
            .where(*conditions)
            .order_by(StoredErrorRecord.last_occurrence.desc(), StoredErrorRecord.id.desc())
            .offset(error_filter.offset)
            .limit(error_filter.limit)
        )
        async with self._db.session() as session:
            rows = (await session.execute(query)).scalars().all()
            summary = await self._summarize(session, and_(*conditions))

        return ErrorPage(
            errors=[StoredError.model_validate(row) for row in rows],
            summary=summary,
            has_more=error_filter.offset + len(rows) < summary.total_errors,
        )

    async def summary(self, instance_id: str, now: dt.datetime) -> ErrorSummary:
        async with self._db.session() as session:
            return await self._summarize(session, and_(*self._conditions(instance_id, now)))

    @staticmethod
    async def _summarize(session, where) -> ErrorSummary:
        by_category = (await session.execute(
            select(StoredErrorRecord.category, func.count()).where(where).group_by(StoredErrorRecord.category)
        )).all()
        by_severity = (await session.execute(
            select(StoredErrorRecord.severity, func.count()).where(where).group_by(StoredErrorRecord.severity)
        )).all()
        return ErrorSummary(
            total_errors=sum(count for _, count in by_category),
            errors_by_category={category: count for category, count in by_category},
            errors_by_severity={severity: count for severity, count in by_severity},
        )

    async def clear(self, instance_id: str) -> int:
        async with self._write_lock:
            async with self._db.session() as session:
                result = await session.execute(
                    delete(StoredErrorRecord).where(StoredErrorRecord.instance_id == instance_id)
                )
        cleared = result.rowcount or 0
        logger.info("errors_cleared", instance_id=instance_id, count=cleared)
        return cleared

    async def purge_expired(self, now: dt.datetime, instance_id: Optional[str] = None) -> int:
        conditions = [StoredErrorRecord.last_occurrence < self.cutoff(now)]
        if instance_id is not None:
            conditions.append(StoredErrorRecord.instance_id == instance_id)
        async with self._write_lock:
            async with self._db.session() as session:
                result = await session.execute(delete(StoredErrorRecord).where(*conditions))
        purged = result.rowcount or 0
        if purged:
            logger.info("errors_purged", count=purged, retention_days=self._options.retention_days)
        return purged
