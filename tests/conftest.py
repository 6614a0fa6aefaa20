"""Shared test fixtures and configuration."""

from __future__ import annotations

import os
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio

os.environ.setdefault("SANDBOXWATCH_ENV", "test")
os.environ.setdefault("SANDBOXWATCH_LOG_LEVEL", "WARNING")

from sandboxwatch.config import ErrorStoreOptions, LogStoreOptions, Settings, reset_settings
from sandboxwatch.logging_config import setup_logging
from sandboxwatch.supervisor.storage import StorageEngine

setup_logging()


@pytest.fixture
def settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Settings:
    """Settings rooted in a temporary data directory, also served by get_settings()."""
    data_dir = tmp_path / "data"
    monkeypatch.setenv("SANDBOXWATCH_DATA_DIR", str(data_dir))
    monkeypatch.setenv("STATUS_REPORT_INTERVAL", "3600")
    reset_settings()
    yield Settings(sandboxwatch_data_dir=str(data_dir), status_report_interval=3600)
    reset_settings()


@pytest_asyncio.fixture
async def storage(settings: Settings) -> AsyncGenerator[StorageEngine, None]:
    """Initialized storage engine on temporary database files."""
    engine = StorageEngine(
        settings.error_db,
        settings.log_db,
        ErrorStoreOptions(),
        LogStoreOptions(log_buffer_size=100),
    )
    result = await engine.init()
    assert result.success, result.error
    yield engine
    await engine.close()
