"""Async SQLite engines and session management for the supervisor stores."""

from __future__ import annotations

import datetime as dt
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Sequence

from sqlalchemy import MetaData, Table, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from sandboxwatch.logging_config import get_logger

logger = get_logger(__name__)

convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

BUSY_TIMEOUT_SECONDS = 30


class Base(DeclarativeBase):
    """SQLAlchemy declarative base with naming conventions."""

    metadata = MetaData(naming_convention=convention)


def sqlite_url(path: Path) -> str:
    return f"sqlite+aiosqlite:///{path}"


def create_sqlite_engine(path: Path, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine for a SQLite file with WAL journaling.

    WAL lets CLI readers query while the supervisor keeps appending.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_async_engine(
        sqlite_url(path),
        echo=echo,
        connect_args={"timeout": BUSY_TIMEOUT_SECONDS},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _set_pragmas(dbapi_connection, connection_record) -> None:  # noqa: ARG001
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Provide a transactional async session scope."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables(engine: AsyncEngine, tables: Sequence[Table]) -> None:
    """Create the given tables (and their indexes) if they are missing."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, tables=list(tables))
    logger.debug("database_tables_ready", tables=[t.name for t in tables])


class StorageUnavailable(RuntimeError):
    """Raised when a store is used before ``init()`` or after ``close()``."""


class SQLiteDatabase:
    """One SQLite file plus the tables it owns.

    ``reinitialize()`` is the recovery path for a corrupted file: the file
    is moved aside and an empty schema is created in its place.
    """

    def __init__(self, path: Path, tables: Sequence[Table]) -> None:
        self.path = path
        self._tables = list(tables)
        self._engine: AsyncEngine | None = None
        self._factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    async def init(self) -> None:
        if self._engine is not None:
            return
        engine = create_sqlite_engine(self.path)
        try:
            await create_tables(engine, self._tables)
        except Exception:
            await engine.dispose()
            raise
        self._engine = engine
        self._factory = create_session_factory(engine)

    def session(self):
        """Transactional session scope; raises ``StorageUnavailable`` when closed."""
        if self._factory is None:
            raise StorageUnavailable(f"database {self.path.name} is not initialized")
        return session_scope(self._factory)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._factory = None

    async def reinitialize(self) -> Path | None:
        """Move the current file aside and start from an empty schema.

        Returns the path the old file was moved to, if there was one.
        """
        await self.close()
        moved: Path | None = None
        if self.path.exists():
            stamp = dt.datetime.now(dt.UTC).strftime("%Y%m%dT%H%M%S%f")
            moved = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
            self.path.rename(moved)
        for suffix in ("-wal", "-shm", "-journal"):
            sidecar = self.path.with_name(self.path.name + suffix)
            if sidecar.exists():
                sidecar.unlink()
        await self.init()
        logger.warning("database_reinitialized", path=str(self.path), moved_to=str(moved) if moved else None)
        return moved


# Failures a store operation can surface; everything else is a programming error.
STORAGE_ERRORS: tuple[type[BaseException], ...] = (SQLAlchemyError, sqlite3.Error, OSError, StorageUnavailable)
