"""Tests for the runner registry and the control surface."""

from __future__ import annotations

import os
import subprocess
import sys

import pytest
import pytest_asyncio

import error_samples as samples

from sandboxwatch.config import MonitoringOptions, Settings
from sandboxwatch.supervisor.control import ControlSurface
from sandboxwatch.supervisor.models import ErrorFilter, LogFilter, ProcessState
from sandboxwatch.supervisor.raw_log import RawLogFile
from sandboxwatch.supervisor.runner import RunnerRegistry, StartRequest
from sandboxwatch.supervisor.status import InstanceStatus, read_status, write_status

PYTHON = sys.executable
SLEEPER = "import time; print('ready', flush=True); time.sleep(60)"


def request(instance_id: str, script: str, **monitoring) -> StartRequest:
    return StartRequest(
        instance_id=instance_id,
        command=PYTHON,
        args=["-c", script],
        monitoring=MonitoringOptions(restart_delay=0.0, kill_timeout=5.0, **monitoring),
    )


def dead_pid() -> int:
    child = subprocess.Popen([PYTHON, "-c", "pass"])
    child.wait()
    return child.pid


@pytest_asyncio.fixture
async def control(settings: Settings):
    registry = RunnerRegistry(settings, status_dir=settings.status_dir)
    await registry.init()
    yield ControlSurface(registry)
    await registry.teardown()


class TestProcessControl:
    """start / stop / status through the control surface."""

    @pytest.mark.asyncio
    async def test_start_status_stop(self, control: ControlSurface, settings: Settings) -> None:
        started = await control.start(request("web", SLEEPER))
        assert started["success"]
        assert started["instance_id"] == "web"
        assert started["pid"]
        assert started["process_id"].startswith("proc-web-")

        status = control.status("web")
        assert status["success"]
        entry = status["instances"][0]
        assert entry["state"] == "running"
        assert entry["pid"] == started["pid"]
        assert not entry["stale"]

        on_disk = read_status(settings.status_dir, "web")
        assert on_disk is not None
        assert on_disk.supervisor_pid == os.getpid()

        stopped = await control.stop("web")
        assert stopped["success"]
        assert stopped["state"] == "stopped"
        assert control.status("web")["instances"][0]["state"] == "stopped"
        assert read_status(settings.status_dir, "web").state == ProcessState.STOPPED

    @pytest.mark.asyncio
    async def test_duplicate_start_is_rejected(self, control: ControlSurface) -> None:
        assert (await control.start(request("web", SLEEPER)))["success"]
        again = await control.start(request("web", SLEEPER))
        assert not again["success"]
        assert again["kind"] == "invalid_state"

    @pytest.mark.asyncio
    async def test_spawn_failure_response(self, control: ControlSurface, tmp_path) -> None:
        response = await control.start(StartRequest(instance_id="bad", command=str(tmp_path / "nope")))
        assert not response["success"]
        assert response["kind"] == "spawn_failure"
        assert "traceback" not in response["error"].lower()
        assert control.registry.get("bad") is None

    @pytest.mark.asyncio
    async def test_stop_unknown_instance_succeeds(self, control: ControlSurface) -> None:
        response = await control.stop("ghost")
        assert response["success"]
        assert response["message"] == "not running"

    @pytest.mark.asyncio
    async def test_status_unknown_instance(self, control: ControlSurface) -> None:
        response = control.status("ghost")
        assert not response["success"]
        assert response["kind"] == "not_found"

    @pytest.mark.asyncio
    async def test_stale_status_reports_stopped(self, control: ControlSurface, settings: Settings) -> None:
        write_status(settings.status_dir, InstanceStatus(
            instance_id="orphan", supervisor_pid=dead_pid(), command="npm run dev",
            state=ProcessState.RUNNING, child_pid=123456, uptime=42.0,
        ))
        entry = control.status("orphan")["instances"][0]
        assert entry["stale"]
        assert entry["state"] == "stopped"
        assert entry["pid"] is None
        assert (await control.stop("orphan"))["message"] == "not running"


class TestQueries:
    """Error and log queries for a supervised instance."""

    @pytest.mark.asyncio
    async def test_errors_from_crashed_instance(self, control: ControlSurface) -> None:
        script = f"import sys; sys.stderr.write({samples.UNDEFINED_PROPERTY!r}); sys.exit(1)"
        assert (await control.start(request("crashy", script, max_restarts=0)))["success"]
        await control.registry.get("crashy").monitor.wait(timeout=15)

        listed = await control.list_errors(ErrorFilter(instance_id="crashy"))
        assert listed["success"]
        assert len(listed["errors"]) == 1
        assert listed["errors"][0]["source_file"] == "src/components/UserList.tsx"
        assert listed["summary"]["total_errors"] == 1
        assert listed["has_more"] is False

        stats = await control.error_stats("crashy")
        assert stats["summary"]["errors_by_category"] == {"runtime": 1}

        status = control.status("crashy")["instances"][0]
        assert status["state"] == "crashed"
        assert status["errors_detected"] == 1

        cleared = await control.clear_errors("crashy")
        assert cleared["cleared_count"] == 1
        assert (await control.clear_errors("crashy"))["cleared_count"] == 0

    @pytest.mark.asyncio
    async def test_log_queries(self, control: ControlSurface) -> None:
        script = "for i in range(5): print(f'line {i}', flush=True)"
        assert (await control.start(request("chatty", script)))["success"]
        await control.registry.get("chatty").monitor.wait(timeout=15)

        page = await control.list_logs(LogFilter(instance_id="chatty", limit=2))
        assert [log["message"] for log in page["logs"]] == ["line 4", "line 3"]
        assert page["total_count"] == 5
        assert page["has_more"]

        tail = await control.logs_since("chatty", last_sequence=3, limit=10)
        assert [log["sequence"] for log in tail["logs"]] == [4, 5]
        assert tail["cursor"]["last_sequence"] == 5
        assert not tail["has_more"]

        invalid = await control.logs_since("chatty", last_sequence=-1)
        assert invalid["kind"] == "invalid_input"

        recent = await control.recent_logs("chatty", 2)
        assert [log["message"] for log in recent["logs"]] == ["line 4", "line 3"]

        stats = await control.log_stats("chatty")
        assert stats["stats"]["total_logs"] == 5

        drained = control.drain_logs("chatty")
        assert "[stdout] line 0" in drained["logs"]
        assert drained["drained_at"]
        assert "line 0" not in control.read_raw_logs("chatty")["logs"]

        assert (await control.clear_logs("chatty"))["cleared_count"] == 5

    @pytest.mark.asyncio
    async def test_drain_without_local_runner(self, control: ControlSurface, settings: Settings) -> None:
        RawLogFile(settings.raw_log_path("elsewhere")).append("stdout", "from another supervisor")
        drained = control.drain_logs("elsewhere")
        assert drained["success"]
        assert "from another supervisor" in drained["logs"]
        assert control.read_raw_logs("elsewhere")["logs"] == ""


class TestRegistry:
    """Explicit init and teardown."""

    @pytest.mark.asyncio
    async def test_start_requires_init(self, settings: Settings) -> None:
        registry = RunnerRegistry(settings)
        result = await registry.start(request("web", SLEEPER))
        assert not result.success
        assert result.kind == "invalid_state"

    @pytest.mark.asyncio
    async def test_teardown_stops_runners(self, settings: Settings) -> None:
        async with RunnerRegistry(settings, status_dir=settings.status_dir) as registry:
            runner = (await registry.start(request("web", SLEEPER))).data
            assert runner.monitor.is_active
        assert not runner.monitor.is_active
        assert registry.runners() == []
        assert not registry.is_open
