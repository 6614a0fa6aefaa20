"""Database models for the error store and the log store."""

from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text, UniqueConstraint

from sandboxwatch.database import Base
from sandboxwatch.supervisor.models import utc_now


class StoredErrorRecord(Base):
    """One deduplicated error per (instance, fingerprint).

    Repeat occurrences bump ``occurrence_count`` and ``last_occurrence``
    instead of inserting a new row.
    """

    __tablename__ = "stored_errors"
    __table_args__ = (
        UniqueConstraint("instance_id", "error_hash"),
        Index("ix_stored_errors_instance_last", "instance_id", "last_occurrence"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(String(128), nullable=False)
    process_id = Column(String(128), nullable=False)
    error_hash = Column(String(64), nullable=False)
    category = Column(String(32), nullable=False)
    severity = Column(String(16), nullable=False)
    message = Column(Text, nullable=False)
    source_file = Column(String(1024), nullable=True)
    line_number = Column(Integer, nullable=True)
    column_number = Column(Integer, nullable=True)
    stack_trace = Column(Text, nullable=True)
    raw_output = Column(Text, nullable=False, default="")
    pattern_id = Column(String(64), nullable=True)
    context = Column(JSON, nullable=False, default=dict)
    first_occurrence = Column(DateTime, nullable=False, default=utc_now)
    last_occurrence = Column(DateTime, nullable=False, default=utc_now)
    occurrence_count = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    def __repr__(self) -> str:
        return (
            f"<StoredErrorRecord(id={self.id}, instance={self.instance_id}, "
            f"hash={self.error_hash}, count={self.occurrence_count})>"
        )


class ProcessLogRecord(Base):
    """One captured output line. ``sequence`` is unique and increasing per instance."""

    __tablename__ = "process_logs"
    __table_args__ = (
        UniqueConstraint("instance_id", "sequence"),
        Index("ix_process_logs_instance_time", "instance_id", "timestamp"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(String(128), nullable=False)
    process_id = Column(String(128), nullable=False)
    level = Column(String(16), nullable=False)   # debug, info, warn, error, fatal
    message = Column(Text, nullable=False)
    stream = Column(String(16), nullable=False)  # stdout, stderr
    source = Column(String(256), nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utc_now)
    sequence = Column(Integer, nullable=False)

    def __repr__(self) -> str:
        return f"<ProcessLogRecord(instance={self.instance_id}, seq={self.sequence}, level={self.level})>"


class LogSequenceRecord(Base):
    """Per-instance sequence counter. Survives ``clear_logs`` so cursors stay valid."""

    __tablename__ = "log_sequences"

    instance_id = Column(String(128), primary_key=True)
    last_sequence = Column(Integer, nullable=False, default=0)


ERROR_TABLES = [StoredErrorRecord.__table__]
LOG_TABLES = [ProcessLogRecord.__table__, LogSequenceRecord.__table__]
