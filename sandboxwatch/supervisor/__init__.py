"""Sandbox process supervisor.

Components:
- ErrorClassifier: ordered rule table turning output chunks into structured errors
- StorageEngine: deduplicated errors, sequenced logs, ring buffer, retention
- ProcessMonitor: spawns, watches, and restarts one child process
- RunnerRegistry: live runners of the supervising process (explicit init/teardown)
- ControlSurface: start/stop/status and error/log queries as JSON-ready dicts
"""

from sandboxwatch.supervisor.classifier import ErrorClassifier, ErrorContext, parse_error
from sandboxwatch.supervisor.control import ControlSurface
from sandboxwatch.supervisor.events import EventBus
from sandboxwatch.supervisor.monitor import ProcessMonitor
from sandboxwatch.supervisor.runner import ProcessRunner, RunnerRegistry, StartRequest
from sandboxwatch.supervisor.storage import StorageEngine

__all__ = [
    "ErrorClassifier",
    "ErrorContext",
    "parse_error",
    "ControlSurface",
    "EventBus",
    "ProcessMonitor",
    "ProcessRunner",
    "RunnerRegistry",
    "StartRequest",
    "StorageEngine",
]
