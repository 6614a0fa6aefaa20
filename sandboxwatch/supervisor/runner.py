"""Runners and the registry that owns them.

A ``ProcessRunner`` bundles everything one instance needs: its storage
engine, raw log file, event bus, monitor, and the background tasks that
keep its status file current. The ``RunnerRegistry`` owns the live
runners for the lifetime of the supervising process, with explicit
``init()`` / ``teardown()``.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from sandboxwatch.config import (
    ErrorStoreOptions,
    LogStoreOptions,
    MonitoringOptions,
    Settings,
    get_settings,
)
from sandboxwatch.logging_config import get_logger
from sandboxwatch.result import ErrorKind, Result
from sandboxwatch.supervisor.events import EventBus, Subscription
from sandboxwatch.supervisor.models import ProcessInfo
from sandboxwatch.supervisor.monitor import ProcessMonitor
from sandboxwatch.supervisor.raw_log import RawLogFile
from sandboxwatch.supervisor.status import InstanceStatus, write_status
from sandboxwatch.supervisor.storage import StorageEngine

logger = get_logger(__name__)


class StartRequest(BaseModel):
    """Everything needed to supervise one instance."""

    instance_id: str = Field(min_length=1)
    command: str = Field(min_length=1)
    args: list[str] = Field(default_factory=list)
    cwd: Optional[str] = None
    env: dict[str, str] = Field(default_factory=dict)
    monitoring: MonitoringOptions = Field(default_factory=MonitoringOptions)
    error_store: ErrorStoreOptions = Field(default_factory=ErrorStoreOptions)
    log_store: LogStoreOptions = Field(default_factory=LogStoreOptions)


class ProcessRunner:
    """One supervised instance."""

    def __init__(self, request: StartRequest, settings: Settings, status_dir: Optional[Path] = None) -> None:
        self.request = request
        self.instance_id = request.instance_id
        self._settings = settings
        self._status_dir = status_dir
        log_options = request.log_store.model_copy(
            update={"log_buffer_size": request.monitoring.log_buffer_size}
        )
        self.storage = StorageEngine(settings.error_db, settings.log_db, request.error_store, log_options)
        self.raw_log = RawLogFile(
            settings.raw_log_path(request.instance_id),
            max_lines=request.monitoring.raw_log_max_lines,
            max_bytes=request.monitoring.raw_log_max_bytes,
        )
        self.events = EventBus()
        self.monitor = ProcessMonitor(
            request.instance_id,
            request.command,
            request.args,
            storage=self.storage,
            cwd=request.cwd,
            env=request.env,
            options=request.monitoring,
            events=self.events,
            raw_log=self.raw_log,
        )
        self._subscription: Optional[Subscription] = None
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> Result[ProcessInfo]:
        ready = await self.storage.init()
        if not ready.success:
            # Observability is degraded, but the workload still gets supervised.
            logger.warning("runner_storage_unavailable", instance_id=self.instance_id, error=ready.error)

        self._subscription = self.events.subscribe()
        result = await self.monitor.start()
        if result.success and self._status_dir is not None:
            self.write_status()
            self._tasks = [
                asyncio.create_task(self._follow_events(), name=f"status-events-{self.instance_id}"),
                asyncio.create_task(self._report_periodically(), name=f"status-report-{self.instance_id}"),
            ]
        return result

    async def stop(self, force: bool = False) -> Result[Optional[ProcessInfo]]:
        result = await self.monitor.stop(force=force)
        if self._status_dir is not None:
            self.write_status()
        return result

    async def close(self) -> None:
        """Stop the child if needed, then release tasks and database handles."""
        if self.monitor.is_active:
            await self.stop()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        await self.monitor.cleanup()
        await self.storage.close()

    def status(self) -> InstanceStatus:
        info = self.monitor.get_process_info()
        stats = self.monitor.get_stats()
        return InstanceStatus(
            instance_id=self.instance_id,
            supervisor_pid=os.getpid(),
            command=self.monitor.command_line,
            state=stats.state,
            process_id=stats.process_id,
            child_pid=stats.pid,
            restart_count=stats.restart_count,
            errors_detected=stats.errors_detected,
            uptime=stats.uptime,
            last_error=info.last_error if info else None,
        )

    def write_status(self) -> None:
        if self._status_dir is None:
            return
        try:
            write_status(self._status_dir, self.status())
        except OSError as exc:
            logger.warning("status_write_failed", instance_id=self.instance_id, error=str(exc))

    async def _follow_events(self) -> None:
        if self._subscription is None:
            return
        async for event in self._subscription:
            self.write_status()
            logger.debug("status_updated", instance_id=self.instance_id, event=event.type)

    async def _report_periodically(self) -> None:
        interval = self._settings.status_report_interval
        while True:
            await asyncio.sleep(interval)
            status = self.status()
            logger.info("status_report", instance_id=self.instance_id, state=str(status.state),
                        pid=status.child_pid, uptime=status.uptime, restart_count=status.restart_count,
                        errors_detected=status.errors_detected)
            self.write_status()


class RunnerRegistry:
    """Live runners of this supervising process, keyed by instance id."""

    def __init__(self, settings: Optional[Settings] = None, status_dir: Optional[Path] = None) -> None:
        self.settings = settings or get_settings()
        self.status_dir = status_dir
        self._runners: dict[str, ProcessRunner] = {}
        self._lock = asyncio.Lock()
        self._open = False
        self.query_storage: Optional[StorageEngine] = None

    async def init(self) -> None:
        """Open the shared query storage used for instances supervised elsewhere."""
        if self._open:
            return
        self.query_storage = StorageEngine.from_settings(self.settings)
        result = await self.query_storage.init()
        if not result.success:
            logger.warning("query_storage_unavailable", error=result.error)
        self._open = True
        logger.info("runner_registry_ready", data_dir=str(self.settings.data_dir))

    async def teardown(self) -> None:
        """Stop every runner and release all resources."""
        async with self._lock:
            runners = list(self._runners.values())
            self._runners.clear()
        for runner in runners:
            try:
                await runner.close()
            except Exception:
                logger.exception("runner_close_failed", instance_id=runner.instance_id)
        if self.query_storage is not None:
            await self.query_storage.close()
            self.query_storage = None
        self._open = False
        logger.info("runner_registry_closed", runners=len(runners))

    async def __aenter__(self) -> RunnerRegistry:
        await self.init()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.teardown()

    @property
    def is_open(self) -> bool:
        return self._open

    def get(self, instance_id: str) -> Optional[ProcessRunner]:
        return self._runners.get(instance_id)

    def runners(self) -> list[ProcessRunner]:
        return list(self._runners.values())

    def storage_for(self, instance_id: str) -> Optional[StorageEngine]:
        """The local runner's storage (with its ring buffer), else the shared query storage."""
        runner = self._runners.get(instance_id)
        return runner.storage if runner is not None else self.query_storage

    async def start(self, request: StartRequest) -> Result[ProcessRunner]:
        if not self._open:
            return Result.fail("runner registry is not initialized", ErrorKind.INVALID_STATE)
        async with self._lock:
            existing = self._runners.get(request.instance_id)
            if existing is not None and existing.monitor.is_active:
                return Result.fail(f"instance {request.instance_id} is already running", ErrorKind.INVALID_STATE)
            if existing is not None:
                await existing.close()
                del self._runners[request.instance_id]

            runner = ProcessRunner(request, self.settings, self.status_dir)
            started = await runner.start()
            if not started.success:
                await runner.close()
                return Result.fail(started.error or "start failed", started.kind or ErrorKind.SPAWN_FAILURE)
            self._runners[request.instance_id] = runner
        return Result.ok(runner)

    async def remove(self, instance_id: str) -> bool:
        async with self._lock:
            runner = self._runners.pop(instance_id, None)
        if runner is None:
            return False
        await runner.close()
        return True
