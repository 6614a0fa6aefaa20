"""Per-instance status files.

The foreground supervisor rewrites ``<status_dir>/<instance>.json`` on
every lifecycle event and on each periodic report. Other processes (the
``process status`` / ``process stop`` commands) read these files instead
of talking to the supervisor directly.
"""

from __future__ import annotations

import datetime as dt
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from sandboxwatch.config import safe_instance_name
from sandboxwatch.logging_config import get_logger
from sandboxwatch.supervisor.models import ProcessState, utc_now

logger = get_logger(__name__)


class InstanceStatus(BaseModel):
    instance_id: str
    supervisor_pid: int
    command: str
    state: Optional[ProcessState] = None
    process_id: Optional[str] = None
    child_pid: Optional[int] = None
    restart_count: int = 0
    errors_detected: int = 0
    uptime: float = 0.0
    last_error: Optional[str] = None
    updated_at: dt.datetime = Field(default_factory=utc_now)

    @property
    def supervisor_alive(self) -> bool:
        return pid_alive(self.supervisor_pid)


def pid_alive(pid: Optional[int]) -> bool:
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def status_path(status_dir: Path, instance_id: str) -> Path:
    return status_dir / f"{safe_instance_name(instance_id)}.json"


def write_status(status_dir: Path, status: InstanceStatus) -> None:
    """Atomically replace the instance's status file."""
    path = status_path(status_dir, status.instance_id)
    temp = path.with_suffix(f".json.{os.getpid()}.tmp")
    temp.write_text(status.model_dump_json(indent=2), encoding="utf-8")
    os.replace(temp, path)


def read_status(status_dir: Path, instance_id: str) -> Optional[InstanceStatus]:
    path = status_path(status_dir, instance_id)
    try:
        return InstanceStatus.model_validate_json(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValidationError) as exc:
        logger.warning("status_file_unreadable", path=str(path), error=str(exc))
        return None


def list_statuses(status_dir: Path) -> list[InstanceStatus]:
    statuses = []
    for path in sorted(status_dir.glob("*.json")):
        try:
            statuses.append(InstanceStatus.model_validate_json(path.read_text(encoding="utf-8")))
        except (OSError, ValidationError) as exc:
            logger.warning("status_file_unreadable", path=str(path), error=str(exc))
    return statuses


def stale(status: InstanceStatus) -> bool:
    """A status whose supervisor is gone but which still claims to be running."""
    live_states = (ProcessState.STARTING, ProcessState.RUNNING, ProcessState.RESTARTING)
    return status.state in live_states and not status.supervisor_alive