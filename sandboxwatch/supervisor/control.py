"""Control surface: the operations exposed to the CLI and HTTP layers.

Every method returns a JSON-ready ``{"success": ..., ...}`` dict. Failures
carry ``error`` and ``kind`` and never a traceback.
"""

from __future__ import annotations

import datetime as dt
import os
import signal
from typing import Any, Optional

from pydantic import BaseModel

from sandboxwatch.logging_config import get_logger
from sandboxwatch.result import ErrorKind, Result
from sandboxwatch.supervisor.models import (
    ErrorFilter,
    LogCursor,
    LogFilter,
    ProcessState,
)
from sandboxwatch.supervisor.raw_log import RawLogFile
from sandboxwatch.supervisor.runner import RunnerRegistry, StartRequest
from sandboxwatch.supervisor.status import InstanceStatus, list_statuses, read_status, stale

logger = get_logger(__name__)


def dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json")


def _status_entry(status: InstanceStatus, *, local: bool) -> dict[str, Any]:
    is_stale = not local and stale(status)
    return {
        "instance_id": status.instance_id,
        "state": str(ProcessState.STOPPED) if is_stale else (str(status.state) if status.state else None),
        "uptime": 0.0 if is_stale else status.uptime,
        "restart_count": status.restart_count,
        "pid": None if is_stale else status.child_pid,
        "supervisor_pid": status.supervisor_pid,
        "process_id": status.process_id,
        "errors_detected": status.errors_detected,
        "last_error": status.last_error,
        "updated_at": status.updated_at.isoformat(),
        "stale": is_stale,
    }


class ControlSurface:
    """Thin orchestration over the registry, its runners, and storage."""

    def __init__(self, registry: RunnerRegistry) -> None:
        self.registry = registry
        self.settings = registry.settings

    def _storage(self, instance_id: str):
        storage = self.registry.storage_for(instance_id)
        if storage is None:
            raise RuntimeError("runner registry is not initialized")
        return storage

    # ── Process ──────────────────────────────────────────────────────

    async def start(self, request: StartRequest) -> dict[str, Any]:
        result = await self.registry.start(request)
        if not result.success:
            return result.to_response(instance_id=request.instance_id)
        info = result.data.monitor.get_process_info()
        return result.to_response(
            instance_id=request.instance_id,
            pid=info.pid if info else None,
            process_id=info.id if info else None,
        )

    async def stop(self, instance_id: str, force: bool = False) -> dict[str, Any]:
        runner = self.registry.get(instance_id)
        if runner is not None:
            result = await runner.stop(force=force)
            return result.to_response(instance_id=instance_id, state=str(ProcessState.STOPPED))

        status = read_status(self.registry.status_dir, instance_id) if self.registry.status_dir else None
        if status is None or not status.supervisor_alive:
            return Result.ok().to_response(instance_id=instance_id, state=str(ProcessState.STOPPED),
                                           message="not running")
        try:
            os.kill(status.supervisor_pid, signal.SIGTERM)
            if force and status.child_pid:
                try:
                    os.killpg(status.child_pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
        except ProcessLookupError:
            return Result.ok().to_response(instance_id=instance_id, state=str(ProcessState.STOPPED),
                                           message="not running")
        except PermissionError as exc:
            return Result.fail(exc, ErrorKind.INVALID_STATE).to_response(instance_id=instance_id)
        logger.info("stop_signalled", instance_id=instance_id, supervisor_pid=status.supervisor_pid, force=force)
        return Result.ok().to_response(instance_id=instance_id, signalled_pid=status.supervisor_pid)

    def status(self, instance_id: Optional[str] = None) -> dict[str, Any]:
        entries: dict[str, dict[str, Any]] = {}
        if self.registry.status_dir is not None:
            for status in list_statuses(self.registry.status_dir):
                entries[status.instance_id] = _status_entry(status, local=False)
        for runner in self.registry.runners():
            entries[runner.instance_id] = _status_entry(runner.status(), local=True)

        if instance_id is not None:
            if instance_id not in entries:
                return Result.fail(f"unknown instance: {instance_id}", ErrorKind.NOT_FOUND).to_response(
                    instance_id=instance_id
                )
            return Result.ok().to_response(instances=[entries[instance_id]])
        return Result.ok().to_response(instances=[entries[key] for key in sorted(entries)])

    # ── Errors ───────────────────────────────────────────────────────

    async def list_errors(self, error_filter: ErrorFilter) -> dict[str, Any]:
        result = await self._storage(error_filter.instance_id).query_errors(error_filter)
        if not result.success:
            return result.to_response()
        page = result.data
        return result.to_response(
            errors=[dump(error) for error in page.errors],
            summary=dump(page.summary),
            has_more=page.has_more,
        )

    async def error_stats(self, instance_id: str) -> dict[str, Any]:
        result = await self._storage(instance_id).get_error_summary(instance_id)
        if not result.success:
            return result.to_response()
        return result.to_response(instance_id=instance_id, summary=dump(result.data))

    async def clear_errors(self, instance_id: str) -> dict[str, Any]:
        result = await self._storage(instance_id).clear_errors(instance_id)
        if not result.success:
            return result.to_response()
        return result.to_response(instance_id=instance_id, cleared_count=result.data)

    # ── Logs ─────────────────────────────────────────────────────────

    async def list_logs(self, log_filter: LogFilter) -> dict[str, Any]:
        result = await self._storage(log_filter.instance_id).get_logs(log_filter)
        if not result.success:
            return result.to_response()
        page = result.data
        return result.to_response(
            logs=[dump(log) for log in page.logs],
            cursor=dump(page.cursor),
            has_more=page.has_more,
            total_count=page.total_count,
        )

    async def logs_since(self, instance_id: str, last_sequence: int = 0, limit: int = 100) -> dict[str, Any]:
        if last_sequence < 0:
            return Result.fail("last_sequence must be >= 0", ErrorKind.INVALID_INPUT).to_response()
        cursor = LogCursor(instance_id=instance_id, last_sequence=last_sequence)
        result = await self._storage(instance_id).get_logs_since_cursor(cursor, limit)
        if not result.success:
            return result.to_response()
        tail = result.data
        return result.to_response(
            logs=[dump(log) for log in tail.logs],
            cursor=dump(tail.cursor),
            has_more=tail.has_more,
        )

    async def recent_logs(self, instance_id: str, count: int = 50) -> dict[str, Any]:
        result = await self._storage(instance_id).fetch_recent_logs(instance_id, count)
        if not result.success:
            return result.to_response()
        return result.to_response(instance_id=instance_id, logs=[dump(log) for log in result.data])

    def drain_logs(self, instance_id: str) -> dict[str, Any]:
        """Return and reset the raw log file (``getAllAndReset``)."""
        runner = self.registry.get(instance_id)
        if runner is not None:
            result = runner.monitor.get_all_logs_and_reset()
        else:
            try:
                result = Result.ok(RawLogFile(self.settings.raw_log_path(instance_id)).drain())
            except OSError as exc:
                result = Result.fail(exc, ErrorKind.STORAGE)
        if not result.success:
            return result.to_response(instance_id=instance_id)
        return result.to_response(
            instance_id=instance_id,
            logs=result.data,
            drained_at=dt.datetime.now(dt.UTC).isoformat(),
        )

    def read_raw_logs(self, instance_id: str) -> dict[str, Any]:
        """Raw log file contents, left in place."""
        runner = self.registry.get(instance_id)
        raw_log = runner.raw_log if runner is not None else RawLogFile(self.settings.raw_log_path(instance_id))
        return Result.ok().to_response(instance_id=instance_id, logs=raw_log.read())

    async def log_stats(self, instance_id: str) -> dict[str, Any]:
        result = await self._storage(instance_id).get_log_stats(instance_id)
        if not result.success:
            return result.to_response()
        return result.to_response(instance_id=instance_id, stats=dump(result.data))

    async def clear_logs(self, instance_id: str) -> dict[str, Any]:
        result = await self._storage(instance_id).clear_logs(instance_id)
        if not result.success:
            return result.to_response()
        return result.to_response(instance_id=instance_id, cleared_count=result.data)
