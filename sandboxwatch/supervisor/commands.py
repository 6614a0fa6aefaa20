"""Subprocess helpers shared by the monitor and one-shot command execution."""

from __future__ import annotations

import asyncio
import os
import signal
import time
from typing import Optional, Sequence

from pydantic import BaseModel

from sandboxwatch.logging_config import get_logger
from sandboxwatch.result import ErrorKind, Result

logger = get_logger(__name__)

# Raised by create_subprocess_exec for a missing binary, bad cwd, or bad args.
SPAWN_ERRORS = (OSError, ValueError)


class CommandOutput(BaseModel):
    command: str
    args: list[str]
    exit_code: int
    stdout: str
    stderr: str
    duration: float


def child_env(extra: Optional[dict[str, str]] = None) -> dict[str, str]:
    """Inherit the supervisor's environment, overlaid with ``extra``."""
    env = os.environ.copy()
    if extra:
        env.update({key: str(value) for key, value in extra.items()})
    return env


def signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    """Send ``sig`` to the child's process group, falling back to the child alone."""
    if process.returncode is not None:
        return
    try:
        os.killpg(process.pid, sig)
    except (ProcessLookupError, PermissionError):
        try:
            process.send_signal(sig)
        except ProcessLookupError:
            pass


async def execute_command(
    command: str,
    args: Sequence[str] = (),
    *,
    cwd: Optional[str] = None,
    env: Optional[dict[str, str]] = None,
    timeout: Optional[float] = None,
) -> Result[CommandOutput]:
    """Run a command to completion, killing it if ``timeout`` elapses.

    A timeout is reported as ``ErrorKind.TIMEOUT``, distinct from a non-zero
    exit, which is a successful run with ``exit_code != 0``.
    """
    started = time.monotonic()
    try:
        process = await asyncio.create_subprocess_exec(
            command,
            *args,
            cwd=cwd,
            env=child_env(env),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except SPAWN_ERRORS as exc:
        logger.error("command_spawn_failed", command=command, error=str(exc))
        return Result.fail(exc, ErrorKind.SPAWN_FAILURE)

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        signal_group(process, signal.SIGKILL)
        await process.wait()
        logger.warning("command_timeout", command=command, timeout=timeout)
        return Result.fail(f"command timed out after {timeout}s: {command}", ErrorKind.TIMEOUT)

    duration = time.monotonic() - started
    logger.debug("command_finished", command=command, exit_code=process.returncode, duration=round(duration, 3))
    return Result.ok(
        CommandOutput(
            command=command,
            args=list(args),
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            duration=duration,
        )
    )
