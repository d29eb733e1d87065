"""
DaemonController — the control surface used from outside the daemon.

The CLI (and any other front end) talks to a running daemon only through
files under ``run/``: it reads ``daemon.pid`` and ``state.json`` and drops
request files into ``run/requests/``. When no daemon is running, queries
are answered from the definitions directory directly and manual runs
execute inline in the calling process.
"""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import sys
import time
from datetime import datetime
from typing import Any

from ezcron.core.bus import EventBus
from ezcron.core.config import EzcronConfig
from ezcron.core.errors import (
    ConfigValidationError,
    ControlError,
    DaemonAlreadyRunning,
    DaemonNotRunning,
    JobNotFoundError,
)
from ezcron.daemon.state import (
    ACTION_RUN,
    ACTION_STOP,
    DaemonState,
    live_pid,
    read_state_file,
    submit_request,
)
from ezcron.logs.sink import EventLogSink, read_log_lines
from ezcron.scheduler.definitions import load_job_file
from ezcron.scheduler.executor import Executor
from ezcron.scheduler.history import RunHistory
from ezcron.scheduler.job import JobSnapshot, RunRecord
from ezcron.scheduler.reconciler import ConfigReconciler, ReloadSummary
from ezcron.scheduler.registry import JobRegistry

logger = logging.getLogger(__name__)

FORCE_INLINE_ENV = "EZCRON_FORCE_INLINE"
_POLL_INTERVAL = 0.1


class DaemonController:
    """
    start / stop / status / list / run / logs against a base directory.

    Usage:
        controller = DaemonController(EzcronConfig.load())
        controller.start()
        controller.status()["running"]
        controller.run("backup")
        controller.stop()
    """

    def __init__(self, config: EzcronConfig | None = None) -> None:
        self.config = config or EzcronConfig()
        self.paths = self.config.get_paths()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def running_pid(self) -> int | None:
        return live_pid(self.paths.pid_file)

    def is_running(self) -> bool:
        return self.running_pid() is not None

    def start(self, wait: float = 5.0) -> int:
        """
        Spawn ``ezcron daemon`` detached from this process.

        Waits up to ``wait`` seconds for the new daemon to claim the pid
        marker and returns its pid. Raises DaemonAlreadyRunning.
        """
        pid = self.running_pid()
        if pid is not None:
            raise DaemonAlreadyRunning(pid)

        self.paths.ensure_dirs()
        command = [
            sys.executable, "-m", "ezcron",
            "--base-dir", str(self.paths.base_dir),
            "daemon",
        ]
        child = subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        logger.info(f"Spawned daemon pid={child.pid}")

        deadline = time.monotonic() + wait
        while time.monotonic() < deadline:
            if self.running_pid() == child.pid:
                break
            if child.poll() is not None:
                raise DaemonNotRunning(f"daemon exited during startup (code {child.returncode})")
            time.sleep(_POLL_INTERVAL)
        return child.pid

    def stop(self, wait: float = 0.0) -> int:
        """
        Ask the running daemon to shut down. Returns its pid.

        With ``wait`` > 0, blocks until the pid marker is released or the
        wait elapses. Raises DaemonNotRunning.
        """
        pid = self.running_pid()
        if pid is None:
            raise DaemonNotRunning()
        submit_request(self.paths.requests_dir, ACTION_STOP)
        logger.info(f"Stop requested for pid={pid}")

        deadline = time.monotonic() + wait
        while wait > 0 and time.monotonic() < deadline and self.is_running():
            time.sleep(_POLL_INTERVAL)
        return pid

    # ── Queries ──────────────────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        pid = self.running_pid()
        document = read_state_file(self.paths.state_file)
        state = _state_from(document)

        if pid is None:
            return {
                "running": False,
                "pid": None,
                "loaded_job_count": 0,
                "last_reload_summary": _summary_dict(state),
                "uptime": None,
            }
        uptime = state.uptime() if state is not None and state.pid == pid else None
        return {
            "running": True,
            "pid": pid,
            "loaded_job_count": len(document.get("jobs", [])) if document else 0,
            "last_reload_summary": _summary_dict(state),
            "uptime": uptime,
        }

    def list(self, now: datetime | None = None) -> list[JobSnapshot]:
        """Job snapshots ordered by id: live daemon state if running, else from definitions."""
        if self.is_running():
            document = read_state_file(self.paths.state_file)
            if document is not None:
                try:
                    return [JobSnapshot.from_dict(j) for j in document.get("jobs", [])]
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"State file jobs unreadable, recomputing: {e}")
        registry, _ = self._load_definitions(now)
        return registry.list(self._read_history())

    def logs(self, job_id: str | None = None, tail: int = 50) -> list[str]:
        return read_log_lines(self.paths.logs_dir, job_id=job_id, tail=tail)

    # ── Commands ─────────────────────────────────────────────────────────────

    def run(self, job_id: str, inline: bool | None = None) -> RunRecord | None:
        """
        Trigger ``job_id`` now.

        A running daemon gets a run request and None is returned. Otherwise
        (or with ``inline`` / EZCRON_FORCE_INLINE=1) the job runs in this
        process and its RunRecord is returned.

        Raises JobNotFoundError if no definition has that id, ControlError if
        its definition file is invalid.
        """
        registry, _ = self._load_definitions()
        job = registry.get(job_id)
        if job is None:
            candidate = self.paths.jobs_dir / f"{job_id}.json"
            if candidate.exists():
                try:
                    load_job_file(candidate)
                except ConfigValidationError as e:
                    raise ControlError(f"invalid job definition {candidate.name}: {e.message}") from e
            raise JobNotFoundError(job_id)

        if inline is None:
            inline = os.environ.get(FORCE_INLINE_ENV) == "1"
        if not inline and self.is_running():
            submit_request(self.paths.requests_dir, ACTION_RUN, job_id)
            logger.info(f"Run request submitted for {job_id!r}")
            return None

        return asyncio.run(self._run_inline(job_id, registry))

    async def _run_inline(self, job_id: str, registry: JobRegistry) -> RunRecord:
        bus = EventBus()
        sink = EventLogSink(self.paths.logs_dir)
        sink.attach(bus)
        history = RunHistory(
            path=self.paths.history_file if self.config.history.persist else None,
            max_records_per_job=self.config.history.max_records_per_job,
        )
        executor = Executor(
            history,
            bus=bus,
            grace_seconds=self.config.executor.grace_seconds,
            stderr_tail_bytes=self.config.executor.stderr_tail_bytes,
        )
        return await executor.execute(registry.get(job_id), trigger="manual")

    # ── Internals ────────────────────────────────────────────────────────────

    def _load_definitions(self, now: datetime | None = None) -> tuple[JobRegistry, ReloadSummary]:
        registry = JobRegistry()
        reconciler = ConfigReconciler(self.paths.jobs_dir, registry, watch=False)
        summary = reconciler.reconcile_all(now)
        return registry, summary

    def _read_history(self) -> RunHistory:
        history = RunHistory(
            path=self.paths.history_file,
            max_records_per_job=self.config.history.max_records_per_job,
        )
        history.load(compact=False)
        return history


def _state_from(document: dict[str, Any] | None) -> DaemonState | None:
    if not document:
        return None
    try:
        return DaemonState.from_dict(document)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"State file unreadable: {e}")
        return None


def _summary_dict(state: DaemonState | None) -> dict[str, Any] | None:
    if state is None or state.last_reload is None:
        return None
    return state.last_reload.to_dict()
