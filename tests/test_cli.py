"""Tests for the longrun CLI."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
from click.testing import CliRunner

from longrun import __version__
from longrun.cli import main
from longrun.models import RunStatus, TaskStatus
from longrun.recovery.points import POINTS_DIR
from longrun.state import FileStateStore


def python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture(autouse=True)
def quick_retries(tmp_path: Path) -> None:
    """Config file without backoff so failing commands do not sleep."""
    (tmp_path / "config.toml").write_text("[retry]\nbase_delay = 0.0\njitter = 0.0\n")


def write_tasks(tmp_path: Path, tasks: list[dict]) -> Path:
    path = tmp_path / "tasks.json"
    path.write_text(json.dumps({"tasks": tasks}))
    return path


@pytest.fixture
def good_tasks(tmp_path: Path) -> Path:
    return write_tasks(
        tmp_path,
        [
            {"id": "fetch", "payload": {"command": python("print('fetched')")}},
            {"id": "build", "depends_on": ["fetch"], "payload": {"command": python("print('built')")}},
        ],
    )


@pytest.fixture
def failing_tasks(tmp_path: Path) -> Path:
    return write_tasks(
        tmp_path,
        [
            {
                "id": "fetch",
                "payload": {
                    "command": python("import sys; sys.stderr.write('bad input\\n'); sys.exit(2)"),
                    "error_kinds": {"2": "INVALID_INPUT"},
                },
            },
            {"id": "build", "depends_on": ["fetch"], "payload": {"command": python("pass")}},
        ],
    )


def invoke(runner: CliRunner, state_dir: Path, *args: str):
    return runner.invoke(main, ["--state-dir", str(state_dir), *args])


class TestMain:
    """Tests for the command group."""

    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_without_command(self, runner, state_dir):
        result = invoke(runner, state_dir)
        assert result.exit_code == 0
        assert "recover" in result.output


class TestInit:
    """Tests for creating runs."""

    def test_creates_run_and_initial_point(self, runner, state_dir, good_tasks):
        result = invoke(runner, state_dir, "init", str(good_tasks))

        assert result.exit_code == 0, result.output
        assert "Created run" in result.output
        run = FileStateStore(state_dir).load()
        assert [t.id for t in run.tasks] == ["fetch", "build"]
        assert len(list((state_dir / POINTS_DIR).iterdir())) == 1
        assert not (state_dir / "engine.lock").exists()

    def test_refuses_existing_run(self, runner, state_dir, good_tasks):
        invoke(runner, state_dir, "init", str(good_tasks))
        result = invoke(runner, state_dir, "init", str(good_tasks))
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_force_replaces(self, runner, state_dir, good_tasks):
        invoke(runner, state_dir, "init", str(good_tasks))
        first = FileStateStore(state_dir).load().run_id
        result = invoke(runner, state_dir, "init", str(good_tasks), "--force")
        assert result.exit_code == 0
        assert FileStateStore(state_dir).load().run_id != first

    def test_invalid_tasks_file(self, runner, state_dir, tmp_path):
        path = write_tasks(tmp_path, [{"id": "a", "depends_on": ["b"]}])
        result = invoke(runner, state_dir, "init", str(path))
        assert result.exit_code == 1
        assert "Invalid task definitions" in result.output


class TestRun:
    """Tests for running in the foreground."""

    def test_run_completes(self, runner, state_dir, good_tasks):
        result = invoke(runner, state_dir, "run", str(good_tasks))

        assert result.exit_code == 0, result.output
        assert "All 2 tasks completed" in result.output
        run = FileStateStore(state_dir).load()
        assert run.status == RunStatus.COMPLETED
        assert not (state_dir / "engine.lock").exists()

    def test_run_after_init(self, runner, state_dir, good_tasks):
        invoke(runner, state_dir, "init", str(good_tasks))
        result = invoke(runner, state_dir, "run")
        assert result.exit_code == 0, result.output

    def test_run_without_state(self, runner, state_dir):
        result = invoke(runner, state_dir, "run")
        assert result.exit_code == 1
        assert "No run state" in result.output

    def test_failing_task_then_manual_retry(self, runner, state_dir, failing_tasks):
        result = invoke(runner, state_dir, "run", str(failing_tasks))

        assert result.exit_code == 1
        run = FileStateStore(state_dir).load()
        assert run.status == RunStatus.FAILED
        assert run.get_task("fetch").status == TaskStatus.NEEDS_REVIEW
        assert run.get_task("fetch").last_error.kind == "INVALID_INPUT"
        assert run.get_task("build").status == TaskStatus.BLOCKED
        assert (state_dir / "escalations.jsonl").exists()

        result = invoke(runner, state_dir, "retry", "fetch")
        assert result.exit_code == 0, result.output
        assert "queued for retry" in result.output
        run = FileStateStore(state_dir).load()
        assert run.status == RunStatus.PAUSED
        assert run.get_task("fetch").attempt_count == 0

    def test_retry_unknown_task(self, runner, state_dir, good_tasks):
        invoke(runner, state_dir, "init", str(good_tasks))
        result = invoke(runner, state_dir, "retry", "ghost")
        assert result.exit_code == 1
        assert "Task not found: ghost" in result.output


class TestStatus:
    """Tests for status output."""

    def test_status_table(self, runner, state_dir, good_tasks):
        invoke(runner, state_dir, "init", str(good_tasks))
        result = invoke(runner, state_dir, "status")

        assert result.exit_code == 0, result.output
        assert "fetch" in result.output
        assert "Global:" in result.output
        assert "Latest recovery points" in result.output

    def test_status_json(self, runner, state_dir, good_tasks):
        invoke(runner, state_dir, "init", str(good_tasks))
        result = invoke(runner, state_dir, "status", "--json")
        data = json.loads(result.output)
        assert data["total_tasks"] == 2
        assert data["status"] == "ready"

    def test_missing_state(self, runner, state_dir):
        result = invoke(runner, state_dir, "status")
        assert result.exit_code == 1
        assert "No run state" in result.output

    def test_corrupted_state(self, runner, state_dir, good_tasks):
        invoke(runner, state_dir, "init", str(good_tasks))
        store = FileStateStore(state_dir)
        store.primary_path.write_text("{")
        store.backup_path.write_text("{")
        result = invoke(runner, state_dir, "status")
        assert result.exit_code == 2


class TestOperatorCommands:
    """Tests for commands that steer a run."""

    def test_pause_without_engine(self, runner, state_dir, good_tasks):
        invoke(runner, state_dir, "init", str(good_tasks))
        result = invoke(runner, state_dir, "pause")
        assert result.exit_code == 0
        assert "No engine is running" in result.output

    def test_offline_abort(self, runner, state_dir, good_tasks):
        invoke(runner, state_dir, "init", str(good_tasks))
        result = invoke(runner, state_dir, "abort", "--reason", "wrong inputs")

        assert result.exit_code == 3
        run = FileStateStore(state_dir).load()
        assert run.status == RunStatus.FAILED
        assert run.status_reason == "wrong inputs"

        again = invoke(runner, state_dir, "abort")
        assert again.exit_code == 0
        assert "already failed" in again.output


class TestRecoveryCommands:
    """Tests for points, checkpoint, prune and recover."""

    def test_points_json(self, runner, state_dir, good_tasks):
        invoke(runner, state_dir, "init", str(good_tasks))
        result = invoke(runner, state_dir, "points", "--json")
        points = json.loads(result.output)
        assert len(points) == 1
        assert points[0]["reason"] == "manual"
        assert points[0]["note"] == "initial state"

    def test_points_table_empty(self, runner, state_dir):
        result = invoke(runner, state_dir, "points")
        assert "No recovery points" in result.output

    def test_checkpoint_and_prune(self, runner, state_dir, good_tasks):
        invoke(runner, state_dir, "init", str(good_tasks))
        result = invoke(runner, state_dir, "checkpoint", "--note", "before change")
        assert result.exit_code == 0, result.output
        assert "Created recovery point rp_" in result.output

        result = invoke(runner, state_dir, "prune")
        assert "Nothing to prune" in result.output

    def test_checkpoint_without_state(self, runner, state_dir):
        result = invoke(runner, state_dir, "checkpoint")
        assert result.exit_code == 1

    def test_recover_auto(self, runner, state_dir, good_tasks, tmp_path):
        invoke(runner, state_dir, "run", str(good_tasks))
        report = tmp_path / "recovery.md"

        result = invoke(runner, state_dir, "recover", "--auto", "--report", str(report))

        assert result.exit_code == 0, result.output
        assert report.read_text().startswith("# Recovery report")
        run = FileStateStore(state_dir).load()
        assert run.last_recovery is not None
        assert run.status == RunStatus.PAUSED
        assert run.status_reason.startswith("restored from rp_")

    def test_recover_specific_point(self, runner, state_dir, good_tasks):
        invoke(runner, state_dir, "init", str(good_tasks))
        initial = json.loads(invoke(runner, state_dir, "points", "--json").output)[0]["point_id"]
        invoke(runner, state_dir, "run")

        result = invoke(runner, state_dir, "recover", "--point", initial)

        assert result.exit_code == 0, result.output
        run = FileStateStore(state_dir).load()
        assert run.completed_count == 0
        points = json.loads(invoke(runner, state_dir, "points", "--json").output)
        assert points[0]["note"] == "before restore"

    def test_recover_unknown_point(self, runner, state_dir, good_tasks):
        invoke(runner, state_dir, "init", str(good_tasks))
        result = invoke(runner, state_dir, "recover", "--point", "rp_19990101T000000000000")
        assert result.exit_code == 1

    def test_recover_without_points(self, runner, state_dir):
        result = invoke(runner, state_dir, "recover", "--auto")
        assert result.exit_code == 1
        assert "No valid recovery point" in result.output


class TestHealthCommand:
    """Tests for the one-off health check."""

    def test_report_written(self, runner, state_dir, good_tasks, tmp_path):
        invoke(runner, state_dir, "init", str(good_tasks))
        report = tmp_path / "health.md"
        result = invoke(runner, state_dir, "health", "--report", str(report))
        assert result.exit_code in (0, 1)
        assert report.read_text().startswith("# Health report")


class TestConfigCommands:
    """Tests for config subcommands."""

    def test_set_and_get(self, runner, state_dir, tmp_path):
        result = invoke(runner, state_dir, "config", "set", "retry.max_total_retries", "7")
        assert result.exit_code == 0
        assert "Set retry.max_total_retries = 7" in result.output
        assert "max_total_retries = 7" in (tmp_path / "config.toml").read_text()

        result = invoke(runner, state_dir, "config", "get", "retry.max_total_retries")
        assert "retry.max_total_retries = 7" in result.output

    def test_set_unknown_key(self, runner, state_dir):
        result = invoke(runner, state_dir, "config", "set", "retry.nonsense", "1")
        assert "Failed to set" in result.output

    def test_get_unknown_key(self, runner, state_dir):
        result = invoke(runner, state_dir, "config", "get", "nope.key")
        assert "Key not found" in result.output

    def test_show_section_json(self, runner, state_dir):
        result = invoke(runner, state_dir, "config", "show", "--json", "--section", "retry")
        data = json.loads(result.output)
        assert data["retry"]["base_delay"] == 0.0

    def test_path(self, runner, state_dir, tmp_path):
        result = invoke(runner, state_dir, "config", "path")
        assert result.output.strip() == str(tmp_path / "config.toml")
