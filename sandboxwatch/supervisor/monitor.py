"""Process Monitor: spawns, watches, and restarts one supervised child.

The monitor owns a single child process for one instance. It:
- Starts the command in its own process group with piped stdout/stderr
- Stores every output line and feeds multi-line chunks to the classifier
- Persists detected errors and publishes lifecycle events
- Restarts after a crash, up to ``max_restarts`` times with a delay
- Stops gracefully (SIGTERM), escalating to SIGKILL after ``kill_timeout``
- Optionally flags a running child that has been silent for too long

States: starting -> running -> {crashed, stopped}; crashed -> restarting ->
starting while restarts remain. Storage failures are logged and never
affect the child.
"""

from __future__ import annotations

import asyncio
import contextlib
import datetime as dt
import signal
import time
from typing import Optional, Sequence
from uuid import uuid4

from pydantic import BaseModel

from sandboxwatch.config import DEFAULT_MONITORING_OPTIONS, MonitoringOptions, safe_instance_name
from sandboxwatch.logging_config import get_logger
from sandboxwatch.result import ErrorKind, Result
from sandboxwatch.supervisor.classifier import ErrorClassifier, ErrorContext, infer_log_level
from sandboxwatch.supervisor.commands import (
    SPAWN_ERRORS,
    CommandOutput,
    child_env,
    execute_command,
    signal_group,
)
from sandboxwatch.supervisor.events import (
    ErrorDetected,
    EventBus,
    ProcessCrashed,
    ProcessRestarting,
    ProcessStarted,
    ProcessStopped,
)
from sandboxwatch.supervisor.models import LogStream, ProcessInfo, ProcessLog, ProcessState, utc_now
from sandboxwatch.supervisor.raw_log import RawLogFile
from sandboxwatch.supervisor.storage import StorageEngine

logger = get_logger(__name__)

STREAM_LIMIT = 1024 * 1024       # longest single output line accepted
PUMP_DRAIN_TIMEOUT = 2.0         # seconds to finish reading pipes after the child exits
UNRESPONSIVE_FACTOR = 2          # silent health intervals before a child counts as unresponsive


class MonitorStats(BaseModel):
    instance_id: str
    process_id: Optional[str] = None
    state: Optional[ProcessState] = None
    pid: Optional[int] = None
    restart_count: int = 0
    errors_detected: int = 0
    uptime: float = 0.0
    last_activity: Optional[dt.datetime] = None
    buffer_size: int = 0


def describe_exit(returncode: Optional[int]) -> tuple[Optional[int], Optional[str]]:
    """Split a returncode into (exit code, signal name)."""
    if returncode is None or returncode >= 0:
        return returncode, None
    try:
        return returncode, signal.Signals(-returncode).name
    except ValueError:
        return returncode, f"SIG{-returncode}"


class ProcessMonitor:
    """Supervises one child process for ``instance_id``."""

    def __init__(
        self,
        instance_id: str,
        command: str,
        args: Sequence[str] = (),
        *,
        storage: StorageEngine,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        options: MonitoringOptions = DEFAULT_MONITORING_OPTIONS,
        events: Optional[EventBus] = None,
        raw_log: Optional[RawLogFile] = None,
        classifier: Optional[ErrorClassifier] = None,
    ) -> None:
        self.instance_id = instance_id
        self.command = command
        self.args = list(args)
        self.cwd = cwd
        self.env = env or {}
        self.options = options
        self.storage = storage
        self.events = events or EventBus()
        self.raw_log = raw_log
        self._classifier = classifier or ErrorClassifier()

        self._info: Optional[ProcessInfo] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._health_task: Optional[asyncio.Task] = None
        self._unresponsive = False
        self._stopping = False
        self._restart_count = 0
        self._errors_detected = 0
        self._last_activity: Optional[dt.datetime] = None
        self._started_at = 0.0
        self._terminal = asyncio.Event()

    @property
    def command_line(self) -> str:
        return " ".join([self.command, *self.args])

    @property
    def state(self) -> Optional[ProcessState]:
        return self._info.state if self._info else None

    @property
    def is_active(self) -> bool:
        """True while a child runs or a restart is pending."""
        if self._process is not None and self._process.returncode is None:
            return True
        return self._restart_task is not None and not self._restart_task.done()

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> Result[ProcessInfo]:
        """Spawn the child. A spawn failure is returned, not retried."""
        if self.is_active:
            return Result.fail(f"instance {self.instance_id} is already running", ErrorKind.INVALID_STATE)
        self._stopping = False
        self._restart_count = 0
        self._terminal.clear()
        result = await self._launch()
        if result.success:
            self._start_health_checks()
        return result

    async def _launch(self) -> Result[ProcessInfo]:
        try:
            await self._spawn()
        except SPAWN_ERRORS as exc:
            if self._info is not None:
                self._info.last_error = str(exc)
            self._terminal.set()
            logger.error("process_spawn_failed", instance_id=self.instance_id, command=self.command_line,
                         error=str(exc))
            return Result.fail(exc, ErrorKind.SPAWN_FAILURE)
        return Result.ok(self.get_process_info())

    async def _spawn(self) -> None:
        process_id = f"proc-{safe_instance_name(self.instance_id)}-{uuid4().hex[:8]}"
        info = ProcessInfo(
            id=process_id,
            instance_id=self.instance_id,
            command=self.command,
            args=self.args,
            cwd=self.cwd or ".",
            state=ProcessState.STARTING,
            restart_count=self._restart_count,
        )
        self._info = info

        process = await asyncio.create_subprocess_exec(
            self.command,
            *self.args,
            cwd=self.cwd,
            env=child_env(self.env),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
            limit=STREAM_LIMIT,
        )
        self._process = process
        self._started_at = time.monotonic()
        info.pid = process.pid
        info.start_time = utc_now()
        info.state = ProcessState.RUNNING

        logger.info("process_started", instance_id=self.instance_id, process_id=process_id,
                    pid=process.pid, command=self.command_line, restart_count=self._restart_count)
        await self._notice(f"Process started: {self.command_line}")
        self.events.publish(ProcessStarted(instance_id=self.instance_id, process_id=process_id,
                                           pid=process.pid, restart_count=self._restart_count))
        self._watch_task = asyncio.create_task(self._watch(process, info), name=f"watch-{process_id}")

    async def stop(self, force: bool = False) -> Result[Optional[ProcessInfo]]:
        """Terminate the child. Stopping an already-stopped monitor succeeds."""
        self._stopping = True
        for task in (self._restart_task, self._health_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        process = self._process
        if process is not None and process.returncode is None:
            logger.info("process_stopping", instance_id=self.instance_id, pid=process.pid, force=force)
            await self._notice("Process stopping")
            if force:
                signal_group(process, signal.SIGKILL)
            else:
                signal_group(process, signal.SIGTERM)
                try:
                    await asyncio.wait_for(process.wait(), timeout=self.options.kill_timeout)
                except TimeoutError:
                    logger.warning("process_kill_escalated", instance_id=self.instance_id, pid=process.pid,
                                   kill_timeout=self.options.kill_timeout)
                    signal_group(process, signal.SIGKILL)
            await process.wait()

        watch = self._watch_task
        if watch is not None and not watch.done():
            await watch

        if self._info is not None and self._info.state != ProcessState.STOPPED:
            self._info.state = ProcessState.STOPPED
            self._info.end_time = self._info.end_time or utc_now()
        self._process = None
        self._terminal.set()
        return Result.ok(self.get_process_info())

    async def restart(self) -> Result[ProcessInfo]:
        """Manual restart: stop the current child and launch a fresh one."""
        await self.stop()
        self._stopping = False
        self._restart_count += 1
        self._terminal.clear()
        logger.info("process_manual_restart", instance_id=self.instance_id, restart_count=self._restart_count)
        result = await self._launch()
        if result.success:
            self._start_health_checks()
        return result

    async def cleanup(self) -> Result[None]:
        """Release tasks and handles. Only valid once the monitor is stopped."""
        if self.is_active:
            return Result.fail("cleanup requires the process to be stopped first", ErrorKind.INVALID_STATE)
        if self._health_task is not None and not self._health_task.done():
            self._health_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._health_task
        self._watch_task = None
        self._restart_task = None
        self._health_task = None
        self._process = None
        logger.debug("monitor_cleaned_up", instance_id=self.instance_id)
        return Result.ok()

    async def wait(self, timeout: Optional[float] = None) -> Optional[ProcessState]:
        """Block until the monitor reaches a terminal state (stopped or crashed for good)."""
        await asyncio.wait_for(self._terminal.wait(), timeout=timeout)
        return self.state

    # ── Output capture ───────────────────────────────────────────────

    async def _watch(self, process: asyncio.subprocess.Process, info: ProcessInfo) -> None:
        pumps = [
            asyncio.create_task(self._pump(process.stdout, LogStream.STDOUT, info)),
            asyncio.create_task(self._pump(process.stderr, LogStream.STDERR, info)),
        ]
        returncode = await process.wait()
        _, pending = await asyncio.wait(pumps, timeout=PUMP_DRAIN_TIMEOUT)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if self._process is process:
            self._process = None
        try:
            await self._on_exit(info, returncode)
        except Exception:
            logger.exception("exit_handler_failed", instance_id=self.instance_id, process_id=info.id)
            self._terminal.set()

    async def _pump(self, stream: Optional[asyncio.StreamReader], kind: LogStream, info: ProcessInfo) -> None:
        """Read lines from one pipe; close a chunk after a quiet period, EOF, or ``max_chunk_lines``."""
        if stream is None:
            return
        chunk: list[str] = []
        try:
            while True:
                try:
                    if chunk:
                        raw = await asyncio.wait_for(stream.readline(), timeout=self.options.chunk_flush_interval)
                    else:
                        raw = await stream.readline()
                except TimeoutError:
                    await self._flush(chunk, kind, info)
                    chunk = []
                    continue
                except ValueError:
                    logger.warning("output_line_too_long", instance_id=self.instance_id, stream=str(kind),
                                   limit=STREAM_LIMIT)
                    continue
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                await self._handle_line(line, kind, info)
                chunk.append(line)
                if len(chunk) >= self.options.max_chunk_lines:
                    await self._flush(chunk, kind, info)
                    chunk = []
        finally:
            if chunk:
                await self._flush(chunk, kind, info)

    async def _handle_line(self, line: str, kind: LogStream, info: ProcessInfo) -> None:
        if not line.strip():
            return
        self._last_activity = utc_now()
        self._unresponsive = False
        try:
            log = ProcessLog(
                instance_id=self.instance_id,
                process_id=info.id,
                level=infer_log_level(line, kind),
                message=line,
                stream=kind,
            )
            result = await self.storage.store_log(log)
            if not result.success:
                logger.warning("log_store_failed", instance_id=self.instance_id, error=result.error)
            await self._write_raw(str(kind), line)
        except Exception:
            logger.exception("output_handler_failed", instance_id=self.instance_id, stream=str(kind))

    async def _flush(self, chunk: list[str], kind: LogStream, info: ProcessInfo) -> None:
        text = "\n".join(chunk)
        if not text.strip():
            return
        try:
            context = ErrorContext(stream=kind, source=self.instance_id, command=self.command_line)
            parsed = self._classifier.parse_error(text, context)
            if parsed is None:
                return
            self._errors_detected += 1
            info.last_error = parsed.message

            stored = await self.storage.store_error(self.instance_id, info.id, parsed)
            if not stored.success:
                logger.warning("error_store_failed", instance_id=self.instance_id, error=stored.error)
            await self._write_raw(str(LogStream.STDERR), f"ERROR: {parsed.message}")
            logger.info("error_detected", instance_id=self.instance_id, category=str(parsed.category),
                        severity=str(parsed.severity), pattern=parsed.pattern_id)
            self.events.publish(ErrorDetected(
                instance_id=self.instance_id,
                process_id=info.id,
                error=parsed,
                error_hash=stored.data.error_hash if stored.success else None,
                is_new=stored.data.is_new if stored.success else True,
            ))
        except Exception:
            logger.exception("chunk_handler_failed", instance_id=self.instance_id, stream=str(kind))

    # ── Exit handling and restarts ───────────────────────────────────

    async def _on_exit(self, info: ProcessInfo, returncode: int) -> None:
        exit_code, signal_name = describe_exit(returncode)
        info.end_time = utc_now()
        info.exit_code = exit_code

        if self._stopping or returncode == 0:
            info.state = ProcessState.STOPPED
            reason = "stopped" if self._stopping else "exited"
            if signal_name == "SIGKILL" and self._stopping:
                reason = "killed"
            logger.info("process_stopped", instance_id=self.instance_id, process_id=info.id,
                        exit_code=exit_code, reason=reason)
            await self._notice(f"Process stopped (exit code {exit_code})")
            self.events.publish(ProcessStopped(instance_id=self.instance_id, process_id=info.id,
                                               exit_code=exit_code, reason=reason))
            self._terminal.set()
            return

        will_restart = self._restart_count < self.options.max_restarts
        info.state = ProcessState.CRASHED
        if signal_name:
            info.last_error = info.last_error or f"killed by {signal_name}"
        else:
            info.last_error = info.last_error or f"exited with code {exit_code}"
        logger.error("process_crashed", instance_id=self.instance_id, process_id=info.id, exit_code=exit_code,
                     signal=signal_name, restart_count=self._restart_count, will_restart=will_restart)
        await self._notice(f"Process exited with code {exit_code}" + (f" ({signal_name})" if signal_name else ""))
        self.events.publish(ProcessCrashed(instance_id=self.instance_id, process_id=info.id, exit_code=exit_code,
                                           signal=signal_name, will_restart=will_restart,
                                           restart_count=self._restart_count))
        if will_restart:
            self._restart_task = asyncio.create_task(self._restart_after_crash(), name=f"restart-{info.id}")
        else:
            logger.error("process_restarts_exhausted", instance_id=self.instance_id,
                         max_restarts=self.options.max_restarts)
            self._terminal.set()

    async def _restart_after_crash(self) -> None:
        while not self._stopping:
            self._restart_count += 1
            attempt = self._restart_count
            delay = self.options.delay_for_attempt(attempt)
            previous = self._info
            if previous is not None:
                previous.state = ProcessState.RESTARTING
            logger.info("process_restarting", instance_id=self.instance_id, attempt=attempt, delay=delay)
            self.events.publish(ProcessRestarting(instance_id=self.instance_id,
                                                  process_id=previous.id if previous else "",
                                                  attempt=attempt, delay=delay))
            await asyncio.sleep(delay)
            if self._stopping:
                return
            try:
                await self._spawn()
                return
            except SPAWN_ERRORS as exc:
                will_restart = self._restart_count < self.options.max_restarts
                info = self._info
                if info is not None:
                    info.state = ProcessState.CRASHED
                    info.last_error = str(exc)
                logger.error("process_respawn_failed", instance_id=self.instance_id, attempt=attempt,
                             error=str(exc), will_restart=will_restart)
                self.events.publish(ProcessCrashed(instance_id=self.instance_id,
                                                   process_id=info.id if info else "",
                                                   will_restart=will_restart, restart_count=attempt))
                if not will_restart:
                    self._terminal.set()
                    return

    # ── Health ───────────────────────────────────────────────────────

    def _start_health_checks(self) -> None:
        if self.options.health_check_interval <= 0:
            return
        if self._health_task is not None and not self._health_task.done():
            return
        self._unresponsive = False
        self._health_task = asyncio.create_task(self._check_health(), name=f"health-{self.instance_id}")

    async def _check_health(self) -> None:
        """Warn once per silent stretch when a running child stops producing output."""
        interval = self.options.health_check_interval
        while not self._terminal.is_set():
            await asyncio.sleep(interval)
            info = self._info
            if info is None or info.state != ProcessState.RUNNING or self._unresponsive:
                continue
            marks = [mark for mark in (self._last_activity, info.start_time) if mark is not None]
            if not marks:
                continue
            silent_for = (utc_now() - max(marks)).total_seconds()
            if silent_for <= interval * UNRESPONSIVE_FACTOR:
                continue
            self._unresponsive = True
            logger.warning("process_unresponsive", instance_id=self.instance_id, pid=info.pid,
                           silent_for=round(silent_for, 1))
            await self._notice(f"Process unresponsive (no output for {silent_for:.1f}s)")

    # ── Queries ──────────────────────────────────────────────────────

    def get_process_info(self) -> Optional[ProcessInfo]:
        return self._info.model_copy() if self._info else None

    def get_stats(self) -> MonitorStats:
        info = self._info
        running = info is not None and info.state == ProcessState.RUNNING
        return MonitorStats(
            instance_id=self.instance_id,
            process_id=info.id if info else None,
            state=info.state if info else None,
            pid=info.pid if running else None,
            restart_count=self._restart_count,
            errors_detected=self._errors_detected,
            uptime=round(time.monotonic() - self._started_at, 3) if running else 0.0,
            last_activity=self._last_activity,
            buffer_size=len(self.storage.get_recent_logs(self.instance_id, self.storage.log_options.log_buffer_size)),
        )

    def get_recent_logs(self, count: int = 50) -> list[ProcessLog]:
        return self.storage.get_recent_logs(self.instance_id, count)

    def get_all_logs_and_reset(self) -> Result[str]:
        """Drain the raw log file: return its contents and start a fresh one."""
        if self.raw_log is None:
            return Result.fail("raw log file is not configured", ErrorKind.NOT_FOUND)
        try:
            return Result.ok(self.raw_log.drain())
        except OSError as exc:
            logger.warning("raw_log_drain_failed", instance_id=self.instance_id, error=str(exc))
            return Result.fail(exc, ErrorKind.STORAGE)

    async def execute_command(
        self, command: str, args: Sequence[str] = (), timeout: Optional[float] = None
    ) -> Result[CommandOutput]:
        """Run a one-shot command in the monitored process's cwd and environment."""
        return await execute_command(command, args, cwd=self.cwd, env=self.env, timeout=timeout)

    async def _notice(self, message: str) -> None:
        await self._write_raw("system", message)

    async def _write_raw(self, stream: str, content: str) -> None:
        # A drain in another process holds the file lock; wait for it off the event loop.
        if self.raw_log is None:
            return
        try:
            await asyncio.to_thread(self.raw_log.append, stream, content)
        except OSError as exc:
            logger.warning("raw_log_write_failed", instance_id=self.instance_id, error=str(exc))
