"""Tests for the subprocess Executor."""
from __future__ import annotations

import asyncio
import time
from datetime import datetime

import pytest

from ezcron.core.bus import EventBus
from ezcron.core.events import Event, EventType
from ezcron.scheduler.executor import Executor
from ezcron.scheduler.history import RunHistory
from ezcron.scheduler.job import CommandSpec, CronSchedule, Job, RunStatus

GRACE = 0.5


def shell_job(script, job_id="sh", timeout=5, env=None, working_dir=None):
    return Job(
        id=job_id,
        name=job_id,
        schedule=CronSchedule("* * * * *"),
        command=CommandSpec(
            program="/bin/sh", args=("-c", script), env=env, working_dir=working_dir,
        ),
        timeout_seconds=timeout,
    )


@pytest.fixture
def executor(history: RunHistory):
    return Executor(history, grace_seconds=GRACE)


# ── Outcomes ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_success(executor: Executor, history: RunHistory):
    job = Job(
        id="echo", name="echo", schedule=CronSchedule("* * * * *"),
        command=CommandSpec(program="/bin/echo", args=("hi",)), timeout_seconds=5,
    )
    record = await executor.execute(job)
    assert record.status is RunStatus.SUCCESS
    assert record.exit_code == 0
    assert record.start_time <= record.end_time
    assert history.last("echo") == record


@pytest.mark.asyncio
async def test_nonzero_exit_is_failed_with_stderr(executor: Executor):
    record = await executor.execute(shell_job("echo boom >&2; exit 3"))
    assert record.status is RunStatus.FAILED
    assert record.exit_code == 3
    assert record.stderr_summary == "boom"


@pytest.mark.asyncio
async def test_stderr_summary_is_bounded(history: RunHistory):
    executor = Executor(history, stderr_tail_bytes=16)
    record = await executor.execute(shell_job("printf 'x%.0s' $(seq 1 100) >&2; printf END >&2; exit 1"))
    assert len(record.stderr_summary) <= 16
    assert record.stderr_summary.endswith("END")


@pytest.mark.asyncio
async def test_missing_binary_is_failed_without_exit_code(executor: Executor, history: RunHistory):
    job = Job(
        id="ghost", name="ghost", schedule=CronSchedule("* * * * *"),
        command=CommandSpec(program="/nonexistent/bin/ghost"),
    )
    record = await executor.execute(job)
    assert record.status is RunStatus.FAILED
    assert record.exit_code is None
    assert "spawn failed" in record.stderr_summary
    assert len(history) == 1


@pytest.mark.asyncio
async def test_bad_working_dir_is_spawn_failure(executor: Executor, tmp_path):
    record = await executor.execute(shell_job("true", working_dir=str(tmp_path / "missing")))
    assert record.status is RunStatus.FAILED
    assert record.exit_code is None


@pytest.mark.asyncio
async def test_timeout_terminates_within_grace(executor: Executor, history: RunHistory):
    job = Job(
        id="sleepy", name="sleepy", schedule=CronSchedule("* * * * *"),
        command=CommandSpec(program="/bin/sleep", args=("10",)), timeout_seconds=1,
    )
    started = time.monotonic()
    record = await executor.execute(job)
    elapsed = time.monotonic() - started

    assert record.status is RunStatus.TIMEOUT
    assert record.exit_code is None
    assert "timed out after 1s" in record.stderr_summary
    # timeout + grace + stream close allowance
    assert elapsed < 1 + GRACE + 1.5
    assert (record.end_time - record.start_time).total_seconds() < 1 + GRACE + 1.5
    assert history.records("sleepy") == [record]


@pytest.mark.asyncio
async def test_timeout_escalates_to_sigkill(executor: Executor):
    # Ignores SIGTERM, so only SIGKILL after the grace interval ends it.
    job = shell_job("trap '' TERM; sleep 10", timeout=1)
    started = time.monotonic()
    record = await executor.execute(job)
    assert record.status is RunStatus.TIMEOUT
    assert time.monotonic() - started < 1 + GRACE + 1.5


@pytest.mark.asyncio
async def test_timeout_kills_whole_process_group(executor: Executor, tmp_path):
    marker = tmp_path / "child-survived"
    job = shell_job(f"(sleep 2; touch {marker}) & wait", timeout=1)
    record = await executor.execute(job)
    assert record.status is RunStatus.TIMEOUT
    await asyncio.sleep(2)
    assert not marker.exists()


# ── Environment & working dir ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_omitted_env_inherits_daemon_environment(executor: Executor, monkeypatch):
    monkeypatch.setenv("EZCRON_TEST_INHERITED", "present")
    record = await executor.execute(shell_job('test "$EZCRON_TEST_INHERITED" = present'))
    assert record.status is RunStatus.SUCCESS


@pytest.mark.asyncio
async def test_explicit_env_is_exact(executor: Executor, monkeypatch):
    monkeypatch.setenv("EZCRON_TEST_INHERITED", "present")
    script = 'test -z "$EZCRON_TEST_INHERITED" && test "$ONLY" = this'
    record = await executor.execute(shell_job(script, env={"ONLY": "this"}))
    assert record.status is RunStatus.SUCCESS


@pytest.mark.asyncio
async def test_working_dir(executor: Executor, tmp_path):
    workdir = tmp_path / "work"
    workdir.mkdir()
    record = await executor.execute(shell_job("touch here", working_dir=str(workdir)))
    assert record.status is RunStatus.SUCCESS
    assert (workdir / "here").exists()


@pytest.mark.asyncio
async def test_working_dir_defaults_to_cwd(executor: Executor, tmp_path):
    # conftest chdirs into tmp_path
    record = await executor.execute(shell_job("touch default-cwd"))
    assert record.status is RunStatus.SUCCESS
    assert (tmp_path / "default-cwd").exists()


# ── Concurrency, events, no retry ────────────────────────────────────────────

@pytest.mark.asyncio
async def test_overlapping_runs_of_same_job(executor: Executor, history: RunHistory):
    job = shell_job("sleep 1")
    t1 = datetime(2024, 5, 1, 10, 0).astimezone()
    t2 = datetime(2024, 5, 1, 10, 1).astimezone()
    started = time.monotonic()
    first = executor.spawn(job, trigger_time=t2)
    second = executor.spawn(job, trigger_time=t1)
    assert executor.in_flight == 2
    r1, r2 = await asyncio.gather(first, second)
    # Ran side by side, not one after the other.
    assert time.monotonic() - started < 1.8
    assert r1.run_id != r2.run_id
    assert [r.trigger_time for r in history.records("sh")] == [t1, t2]
    assert await executor.drain(timeout=1)
    assert executor.in_flight == 0


@pytest.mark.asyncio
async def test_failed_run_is_not_retried(executor: Executor, history: RunHistory, tmp_path):
    counter = tmp_path / "count"
    record = await executor.execute(shell_job(f"echo x >> {counter}; exit 1"))
    assert record.status is RunStatus.FAILED
    await asyncio.sleep(0.3)
    assert counter.read_text().count("x") == 1
    assert len(history.records("sh")) == 1


@pytest.mark.asyncio
async def test_cancelled_run_is_recorded_and_child_left_running(executor: Executor, history: RunHistory, tmp_path):
    marker = tmp_path / "finished"
    task = executor.spawn(shell_job(f"sleep 0.5; touch {marker}"))
    await asyncio.sleep(0.2)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    record = history.last("sh")
    assert record.status is RunStatus.FAILED
    assert record.exit_code is None
    assert "child process left running" in record.stderr_summary
    # Nothing signals the child, so it completes on its own.
    await asyncio.sleep(1)
    assert marker.exists()


@pytest.mark.asyncio
async def test_events_emitted(history: RunHistory):
    bus = EventBus()
    seen: list[Event] = []

    async def handler(event: Event):
        seen.append(event)

    bus.on("run:*", handler)
    executor = Executor(history, bus=bus)
    record = await executor.execute(shell_job("exit 2"), trigger="manual")

    assert [e.type for e in seen] == [EventType.RUN_START, EventType.RUN_FINISH]
    start, finish = seen
    assert start.data["trigger"] == "manual"
    assert start.data["run_id"] == record.run_id == finish.data["run_id"]
    assert finish.data["status"] == "failed"
    assert finish.data["exit_code"] == 2
    assert finish.level == "ERROR"
    assert record.trigger == "manual"

