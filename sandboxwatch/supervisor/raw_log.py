"""Per-instance raw log file with an atomic drain.

Lines are appended as ``[<iso timestamp>] [<stream>] <content>``. Writers
and the drain coordinate through an exclusive ``flock`` on the file's
inode: the drain holds it across rename, recreate and read, and a writer
that wakes up holding a lock on a renamed inode reopens the path and
retries. A line therefore lands either in the drained contents or in the
fresh file, never in both and never in neither.
"""

from __future__ import annotations

import fcntl
import os
import time
from pathlib import Path
from typing import IO, Iterable, Optional

from sandboxwatch.logging_config import get_logger
from sandboxwatch.supervisor.models import utc_now

logger = get_logger(__name__)

TRIM_KEEP_RATIO = 0.7
LINE_COUNT_THRESHOLD = 50 * 1024   # only count lines once the file is this big
LOCK_RETRIES = 5


def format_line(stream: str, content: str, timestamp: Optional[str] = None) -> str:
    stamp = timestamp or utc_now().isoformat(timespec="milliseconds") + "Z"
    return f"[{stamp}] [{stream}] {content.rstrip(chr(10))}\n"


class RawLogFile:
    """Append-only flat log drained by upstream pollers."""

    def __init__(self, path: Path, max_lines: int = 1000, max_bytes: int = 1024 * 1024) -> None:
        self.path = path
        self.max_lines = max_lines
        self.max_bytes = max_bytes

    def _open_locked(self) -> IO[str]:
        """Open the current file at ``path`` and hold an exclusive lock on it."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(LOCK_RETRIES):
            handle = open(self.path, "a+", encoding="utf-8")
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                if os.fstat(handle.fileno()).st_ino == os.stat(self.path).st_ino:
                    return handle
            except FileNotFoundError:
                pass
            # Rotated while we waited for the lock.
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            handle.close()
        raise OSError(f"could not lock raw log {self.path}")

    @staticmethod
    def _release(handle: IO[str]) -> None:
        try:
            handle.flush()
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    def append(self, stream: str, content: str) -> None:
        self.append_many([(stream, content)])

    def append_many(self, entries: Iterable[tuple[str, str]]) -> None:
        payload = "".join(format_line(stream, content) for stream, content in entries)
        if not payload:
            return
        handle = self._open_locked()
        try:
            handle.write(payload)
            handle.flush()
            self._trim_if_needed(handle)
        finally:
            self._release(handle)

    def _trim_if_needed(self, handle: IO[str]) -> None:
        size = os.fstat(handle.fileno()).st_size
        if size <= LINE_COUNT_THRESHOLD and size <= self.max_bytes:
            return
        handle.seek(0)
        lines = handle.read().splitlines(keepends=True)
        if size <= self.max_bytes and len(lines) <= self.max_lines:
            return
        keep = lines[-int(self.max_lines * TRIM_KEEP_RATIO):]
        handle.truncate(0)
        handle.write("".join(keep))
        handle.flush()
        logger.debug("raw_log_trimmed", path=str(self.path), kept=len(keep), dropped=len(lines) - len(keep))

    def read(self) -> str:
        """Current contents without draining."""
        try:
            return self.path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return ""

    def drain(self) -> str:
        """Atomically swap in an empty file and return everything written before."""
        handle = self._open_locked()
        try:
            temp = self.path.with_name(f"{self.path.name}.tmp.{time.time_ns()}")
            os.rename(self.path, temp)
            self.path.touch()
            handle.seek(0)
            content = handle.read()
            temp.unlink()
        finally:
            self._release(handle)
        logger.debug("raw_log_drained", path=str(self.path), size=len(content))
        return content
