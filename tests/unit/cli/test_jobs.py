"""Tests for the taskrelay jobs commands."""

from __future__ import annotations

import json
import sys
import types
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from taskrelay.cli import main
from taskrelay.db.types import JobStatus
from taskrelay.jobs.exceptions import NonRecoverableExecutionError
from taskrelay.jobs.scheduler import JobScheduler
from taskrelay.jobs.widget import Widget, WidgetConfig

WIDGET_MODULE = "taskrelay_cli_test_widgets"


class CountWidget(Widget):
    def config(self):
        return WidgetConfig(name="Count", description="Count items")

    def discover_items(self):
        return [{"n": 1}, {"n": 2}]

    def execute(self, item):
        if item.get("fail"):
            raise NonRecoverableExecutionError("refused")
        return item


class NotAWidget:
    pass


@pytest.fixture
def widget_module(monkeypatch):
    """Make the test widgets importable by module path."""
    module = types.ModuleType(WIDGET_MODULE)
    module.CountWidget = CountWidget
    module.NotAWidget = NotAWidget
    module.Widget = Widget
    monkeypatch.setitem(sys.modules, WIDGET_MODULE, module)
    return f"{WIDGET_MODULE}:CountWidget"


@pytest.fixture
def scheduler(db_conn, emitter, clock):
    return JobScheduler(
        db_conn, emitter=emitter, clock=clock, monotonic=clock.monotonic
    )


@pytest.fixture
def invoke(runner: CliRunner, scheduler):
    def _invoke(*args: str, **kwargs):
        return runner.invoke(main, list(args), obj={"scheduler": scheduler}, **kwargs)

    return _invoke


@pytest.fixture
def queued(scheduler):
    """Scheduler with one completed, one failed and one pending job."""
    scheduler.register("count", CountWidget())
    first = scheduler.enqueue("count", {"n": 1}, priority=90)
    second = scheduler.enqueue("count", {"fail": True}, priority=50)
    third = scheduler.enqueue("count", {"n": 3}, priority=10)
    scheduler.process_batch("count")
    scheduler.process_batch("count")
    return first, second, third


class TestListAndShow:
    """Tests for jobs list and jobs show."""

    def test_list_empty(self, invoke) -> None:
        """An empty queue says so."""
        result = invoke("jobs", "list")
        assert result.exit_code == 0
        assert "No jobs found." in result.output

    def test_list_table(self, invoke, queued) -> None:
        """Each job is listed with its status."""
        result = invoke("jobs", "list")

        assert result.exit_code == 0
        assert "completed" in result.output
        assert "failed" in result.output
        assert "pending" in result.output

    def test_list_json_filtered(self, invoke, queued) -> None:
        """--status and --json combine."""
        result = invoke("jobs", "list", "--status", "failed", "--json")

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert [job["id"] for job in data] == [queued[1]]
        assert data[0]["status"] == "failed"

    def test_show(self, invoke, queued) -> None:
        """show prints details including the error."""
        result = invoke("jobs", "show", str(queued[1]))

        assert result.exit_code == 0
        assert f"Job: {queued[1]}" in result.output
        assert "refused" in result.output

    def test_show_json(self, invoke, queued) -> None:
        """show --json returns the job as JSON."""
        result = invoke("jobs", "show", str(queued[0]), "--json")

        data = json.loads(result.output)
        assert data["result_data"]["result"] == {"n": 1}

    def test_show_missing(self, invoke) -> None:
        """An unknown id fails."""
        result = invoke("jobs", "show", "999")
        assert result.exit_code == 1
        assert "Job not found: 999" in result.output


class TestReports:
    """Tests for status, stats and health."""

    def test_status(self, invoke, queued) -> None:
        """status prints counts per status."""
        result = invoke("jobs", "status", "count")

        assert result.exit_code == 0
        assert "Queue Status: count" in result.output
        assert "Total:" in result.output

    def test_status_json(self, invoke, queued) -> None:
        """status --json includes flags and progress."""
        invoke("jobs", "pause", "count")

        data = json.loads(invoke("jobs", "status", "count", "--json").output)

        assert data["total"] == 3
        assert data["completed"] == 1
        assert data["is_paused"] is True

    def test_stats_json(self, invoke, queued) -> None:
        """stats reports the success rate."""
        data = json.loads(invoke("jobs", "stats", "count", "--json").output)
        assert data["success_rate"] == 50.0

    def test_health_healthy(self, invoke) -> None:
        """A healthy queue exits 0."""
        result = invoke("jobs", "health")
        assert result.exit_code == 0
        assert "HEALTHY" in result.output

    def test_health_warning_exits_nonzero(self, invoke, queued) -> None:
        """A degraded queue exits 1."""
        result = invoke("jobs", "health", "--force", "--json")

        assert result.exit_code == 1
        assert json.loads(result.output)["status"] == "warning"


class TestControlCommands:
    """Tests for stop, pause, resume and cancel."""

    def test_stop_and_resume(self, invoke, scheduler) -> None:
        """stop sets the flag and resume clears it."""
        result = invoke("jobs", "stop", "count")
        assert result.exit_code == 0
        assert "Stop requested for count." in result.output
        assert scheduler.control.is_stopped("count")

        result = invoke("jobs", "resume", "count")
        assert "Resumed count." in result.output
        assert not scheduler.control.is_stopped("count")

    def test_pause(self, invoke, scheduler) -> None:
        """pause sets the pause flag."""
        result = invoke("jobs", "pause", "count")
        assert "Pause requested for count." in result.output
        assert scheduler.control.is_paused("count")

    def test_cancel(self, invoke, queued, scheduler) -> None:
        """A pending job can be cancelled."""
        result = invoke("jobs", "cancel", str(queued[2]))

        assert result.exit_code == 0
        assert f"Job {queued[2]} cancelled." in result.output
        assert scheduler.get_job(queued[2]).status == JobStatus.PAUSED

    def test_cancel_finished(self, invoke, queued) -> None:
        """A completed job cannot be cancelled."""
        result = invoke("jobs", "cancel", str(queued[0]))

        assert result.exit_code == 1
        assert "with status completed" in result.output


class TestMaintenanceCommands:
    """Tests for retry-failed, clear and purge."""

    def test_retry_failed(self, invoke, queued, scheduler) -> None:
        """Failed jobs are requeued."""
        result = invoke("jobs", "retry-failed", "count")

        assert "Requeued 1 failed job(s)." in result.output
        assert scheduler.get_job(queued[1]).status == JobStatus.PENDING

    def test_clear_requires_confirmation(self, invoke, queued, scheduler) -> None:
        """Declining the prompt keeps the jobs."""
        result = invoke("jobs", "clear", "count", input="n\n")

        assert "Cancelled." in result.output
        assert len(scheduler.get_jobs()) == 3

    def test_clear_by_status(self, invoke, queued, scheduler) -> None:
        """--status limits what is deleted."""
        result = invoke("jobs", "clear", "count", "--status", "failed", "--yes")

        assert "Cleared 1 job(s)." in result.output
        assert len(scheduler.get_jobs()) == 2

    def test_purge(self, invoke, queued, clock) -> None:
        """purge removes old finished jobs."""
        clock.advance(3 * 86400)

        result = invoke("jobs", "purge", "--days", "1")

        assert result.exit_code == 0
        assert "Purged 2 job(s)." in result.output


class TestWidgetCommands:
    """Tests for enqueue and run."""

    def test_enqueue(self, invoke, widget_module, scheduler) -> None:
        """enqueue registers the widget and stores the payload."""
        result = invoke(
            "jobs",
            "enqueue",
            "count",
            "--widget",
            widget_module,
            "--payload",
            '{"n": 5}',
            "--priority",
            "70",
        )

        assert result.exit_code == 0
        assert "Enqueued job" in result.output
        job = scheduler.get_jobs()[0]
        assert job.payload == {"n": 5}
        assert job.priority == 70

    def test_enqueue_invalid_json(self, invoke, widget_module) -> None:
        """A malformed payload is a usage error."""
        result = invoke(
            "jobs", "enqueue", "count", "--widget", widget_module, "--payload", "{"
        )

        assert result.exit_code == 2
        assert "Invalid JSON" in result.output

    @pytest.mark.parametrize(
        "spec",
        [
            "no_separator",
            f"{WIDGET_MODULE}:NotAWidget",
            f"{WIDGET_MODULE}:Missing",
            f"{WIDGET_MODULE}:Widget",
            "taskrelay_no_such_module:Widget",
        ],
    )
    def test_bad_widget_spec(self, invoke, widget_module, spec) -> None:
        """Widgets that cannot be loaded are rejected."""
        result = invoke("jobs", "enqueue", "count", "--widget", spec)

        assert result.exit_code == 2
        assert "--widget" in result.output

    def test_run_with_populate(self, invoke, widget_module, scheduler) -> None:
        """run --populate discovers items and processes them."""
        result = invoke("jobs", "run", "count", "--widget", widget_module, "--populate")

        assert result.exit_code == 0
        assert "Enqueued 2 discovered item(s)." in result.output
        assert "Executed 2 job(s)." in result.output
        assert scheduler.queue_status("count")["completed"] == 2

    def test_run_max_jobs(self, invoke, widget_module, scheduler) -> None:
        """--max-jobs limits the number of executions."""
        invoke(
            "jobs", "run", "count", "--widget", widget_module, "--populate", "-n", "1"
        )

        assert scheduler.queue_status("count")["pending"] == 1


class TestMain:
    """Tests for the top-level group."""

    def test_version(self, runner: CliRunner) -> None:
        """--version prints the package version."""
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_builds_scheduler_from_db_option(self, runner: CliRunner, tmp_path):
        """Without an injected scheduler the --db path is opened."""
        db_path = tmp_path / "jobs.db"

        with patch("taskrelay.cli.configure_logging") as configure_logging:
            result = runner.invoke(main, ["--db", str(db_path), "jobs", "list"])

        configure_logging.assert_called_once()

        assert result.exit_code == 0
        assert "No jobs found." in result.output
        assert db_path.exists()
