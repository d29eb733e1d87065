"""Tests for CLI commands."""

import json
import os

import pytest
from typer.testing import CliRunner

from ezcron.cli.main import app
from ezcron.daemon.state import write_pid


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def invoke(runner, base_dir):
    def _invoke(*args):
        return runner.invoke(app, ["--base-dir", str(base_dir), *args])

    return _invoke


def test_version(runner):
    """ezcron version shows version."""
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "ezcron 0.1.0" in result.output


def test_list_json(invoke, write_definition, make_definition):
    write_definition(make_definition("b", enabled=False))
    write_definition(make_definition("a", schedule={"type": "simple", "repeat": "everyminute"}))
    result = invoke("--json", "list")
    assert result.exit_code == 0
    jobs = json.loads(result.output)
    assert [(j["id"], j["enabled"], j["schedule"]) for j in jobs] == [
        ("a", True, "every-minute"),
        ("b", False, "cron(* * * * *)"),
    ]
    assert jobs[0]["next_run"] is not None
    assert jobs[0]["last_run_result"] is None


def test_list_empty(invoke, paths):
    result = invoke("list")
    assert result.exit_code == 0
    assert "No jobs found" in result.output


def test_list_table(invoke, write_definition, make_definition):
    write_definition(make_definition("backup"))
    result = invoke("list")
    assert result.exit_code == 0
    assert "backup" in result.output


def test_run_unknown_job_fails(invoke, paths):
    result = invoke("run", "ghost")
    assert result.exit_code == 1
    assert "job not found: ghost" in result.output


def test_run_inline(invoke, write_definition, make_definition):
    write_definition(make_definition("echo"))
    result = invoke("run", "echo")
    assert result.exit_code == 0
    assert "job=echo status=success exit_code=0" in result.output

    logs = invoke("logs", "--job", "echo")
    assert logs.exit_code == 0
    assert "event=start trigger=manual" in logs.output
    assert "event=success" in logs.output


def test_run_failed_job_reports_status(invoke, write_definition, make_definition):
    write_definition(make_definition("bad", command={"program": "/bin/sh", "args": ["-c", "exit 3"]}))
    result = invoke("--json", "run", "bad")
    assert result.exit_code == 0
    record = json.loads(result.output)
    assert record["status"] == "failed"
    assert record["exit_code"] == 3


def test_run_submits_request_when_daemon_running(invoke, paths, write_definition, make_definition):
    write_definition(make_definition("echo"))
    write_pid(paths.pid_file, os.getpid())
    result = invoke("run", "echo")
    assert result.exit_code == 0
    assert "run request submitted for job=echo" in result.output
    assert len(list(paths.requests_dir.glob("*.json"))) == 1


def test_stop_not_running_fails(invoke, paths):
    result = invoke("stop")
    assert result.exit_code == 1
    assert "daemon is not running" in result.output


def test_start_when_running_fails(invoke, paths):
    write_pid(paths.pid_file, os.getpid())
    result = invoke("start")
    assert result.exit_code == 1
    assert "already running" in result.output


def test_status_json_when_stopped(invoke, paths):
    result = invoke("--json", "status")
    assert result.exit_code == 0
    assert json.loads(result.output) == {
        "running": False,
        "pid": None,
        "loaded_job_count": 0,
        "last_reload_summary": None,
        "uptime": None,
    }


def test_status_text(invoke, paths):
    result = invoke("status")
    assert result.exit_code == 0
    assert "daemon: stopped" in result.output
    assert "loaded_jobs: 0" in result.output


def test_logs_empty(invoke, paths):
    result = invoke("logs", "-n", "5")
    assert result.exit_code == 0
    assert "No logs found." in result.output


def test_config_json(invoke, base_dir):
    result = invoke("--json", "config")
    assert result.exit_code == 0
    data = json.loads(result.output)
    assert data["paths"]["base_dir"] == str(base_dir)
    assert data["reload"]["debounce_ms"] == 300


def test_invalid_config_fails(invoke, base_dir):
    base_dir.mkdir(parents=True, exist_ok=True)
    (base_dir / "config.toml").write_text("[logs]\nlevel = \"LOUD\"\n")
    result = invoke("status")
    assert result.exit_code == 1
    assert "Invalid configuration" in result.output
