"""
Daemon — the long-running process that wires the scheduling pieces together.

    EzcronConfig ─→ Daemon
                     ├─ ConfigReconciler ─→ JobRegistry ←─ Scheduler ─→ Executor ─→ RunHistory
                     ├─ EventBus ─→ EventLogSink (logs/job-*.log)
                     └─ run/ markers (daemon.pid, state.json, requests/)

Every scheduler tick the daemon also consumes control requests, publishes
``state.json`` and (hourly) purges expired log files.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from typing import Any

from ezcron.core.bus import EventBus
from ezcron.core.config import EzcronConfig
from ezcron.core.errors import DaemonAlreadyRunning, JobNotFoundError
from ezcron.core.events import Event, EventType
from ezcron.daemon.state import (
    ACTION_RUN,
    ACTION_STOP,
    DaemonState,
    collect_requests,
    live_pid,
    remove_pid,
    write_pid,
    write_state_file,
)
from ezcron.logs.sink import EventLogSink, purge_old_logs
from ezcron.scheduler.engine import Clock, Scheduler, local_now
from ezcron.scheduler.executor import Executor
from ezcron.scheduler.history import RunHistory
from ezcron.scheduler.job import JobSnapshot
from ezcron.scheduler.reconciler import ConfigReconciler, ReloadSummary
from ezcron.scheduler.registry import JobRegistry

logger = logging.getLogger(__name__)

PURGE_INTERVAL = 3600.0  # seconds between log retention sweeps


class Daemon:
    """
    In-process daemon runtime.

    Usage:
        daemon = Daemon(EzcronConfig.load())
        await daemon.serve()          # blocks until a stop request or signal

    Or, driven step by step (tests):
        await daemon.start()
        daemon.run_now("backup")
        await daemon.stop()
    """

    def __init__(self, config: EzcronConfig | None = None, clock: Clock = local_now) -> None:
        self.config = config or EzcronConfig()
        self.paths = self.config.get_paths()
        self._clock = clock

        self.bus = EventBus()
        self.registry = JobRegistry()
        self.history = RunHistory(
            path=self.paths.history_file if self.config.history.persist else None,
            max_records_per_job=self.config.history.max_records_per_job,
        )
        self.executor = Executor(
            self.history,
            bus=self.bus,
            grace_seconds=self.config.executor.grace_seconds,
            stderr_tail_bytes=self.config.executor.stderr_tail_bytes,
        )
        self.scheduler = Scheduler(
            self.registry,
            self.executor,
            bus=self.bus,
            tick_interval=self.config.scheduler.tick_interval,
            clock=clock,
            on_tick=self._on_tick,
        )
        self.reconciler = ConfigReconciler(
            self.paths.jobs_dir,
            self.registry,
            bus=self.bus,
            debounce_ms=self.config.reload.debounce_ms,
            on_summary=self.record_reload,
            watch=self.config.reload.watch,
        )
        self.sink = EventLogSink(self.paths.logs_dir)

        self.state = DaemonState(pid=os.getpid())
        self._stop_requested = asyncio.Event()
        self._last_purge = 0.0

    # ── Lifecycle ────────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self.state.running

    async def start(self) -> None:
        """
        Claim the pid marker, load history and definitions, then start
        watching and ticking.

        Raises DaemonAlreadyRunning if another live process owns the marker.
        """
        if self.state.running:
            return
        self.paths.ensure_dirs()
        owner = live_pid(self.paths.pid_file)
        if owner is not None and owner != os.getpid():
            raise DaemonAlreadyRunning(owner)
        write_pid(self.paths.pid_file)

        self._stop_requested.clear()
        self.state.pid = os.getpid()
        self.state.started_at = self._clock()
        self.state.running = True
        self.sink.attach(self.bus)

        self._purge_logs()
        loaded = self.history.load()
        stale = collect_requests(self.paths.requests_dir)
        if stale:
            logger.info(f"Discarded {len(stale)} request(s) left from a previous daemon")

        self.reconciler.reconcile_all(self._clock())
        await self.reconciler.start()
        await self.scheduler.start()

        logger.info(
            f"Daemon started (pid={self.state.pid}, jobs={len(self.registry)}, "
            f"history={loaded})"
        )
        await self.bus.emit(Event(
            type=EventType.DAEMON_START,
            source="daemon",
            data={"pid": self.state.pid, "jobs": len(self.registry)},
        ))
        self.publish_state()

    async def stop(self) -> None:
        """
        Stop dispatching and watching, give in-flight runs up to
        ``shutdown_grace_seconds`` to finish, then release the pid marker.
        Runs still going after that are left alone.
        """
        if not self.state.running:
            return
        await self.scheduler.stop()
        await self.reconciler.stop()

        grace = self.config.scheduler.shutdown_grace_seconds
        if self.executor.in_flight:
            logger.info(f"Waiting up to {grace:g}s for {self.executor.in_flight} run(s)")
        if not await self.executor.drain(timeout=grace):
            logger.warning("Shutting down with runs still in flight; they are not reaped")

        self.state.running = False
        self.publish_state()
        remove_pid(self.paths.pid_file, self.state.pid)
        await self.bus.emit(Event(type=EventType.DAEMON_STOP, source="daemon", data={"pid": self.state.pid}))
        self.sink.detach(self.bus)
        logger.info("Daemon stopped")

    def request_stop(self) -> None:
        """Ask ``serve`` to shut down at its next opportunity."""
        self._stop_requested.set()

    async def serve(self) -> None:
        """Start, run until a stop request or SIGINT/SIGTERM, then stop."""
        await self.start()
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
                installed.append(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                logger.debug(f"Cannot install handler for {sig.name} here")
        try:
            await self._stop_requested.wait()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            await self.stop()

    # ── Commands & queries ───────────────────────────────────────────────────

    def run_now(self, job_id: str) -> asyncio.Task:
        """
        Dispatch a manual run outside the tick loop. Disabled jobs may be run
        manually. Raises JobNotFoundError for ids not in the registry.
        """
        job = self.registry.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        logger.info(f"Manual run of {job_id!r}")
        return self.executor.spawn(job, trigger_time=self._clock(), trigger="manual")

    def record_reload(self, summary: ReloadSummary) -> None:
        self.state.last_reload = summary

    def snapshots(self) -> list[JobSnapshot]:
        return self.registry.list(self.history)

    def status(self) -> dict[str, Any]:
        summary = self.state.last_reload
        return {
            "running": self.state.running,
            "pid": self.state.pid if self.state.running else None,
            "loaded_job_count": len(self.registry),
            "last_reload_summary": summary.to_dict() if summary else None,
            "uptime": self.state.uptime(self._clock()),
        }

    def publish_state(self) -> None:
        try:
            write_state_file(
                self.paths.state_file,
                self.state,
                self.snapshots(),
                self.history.tail(self.config.history.state_recent_runs),
            )
        except OSError as e:
            logger.warning(f"Could not write state file: {e}")

    # ── Per-tick housekeeping ────────────────────────────────────────────────

    def _on_tick(self) -> None:
        self._handle_requests()
        self.publish_state()
        if time.monotonic() - self._last_purge >= PURGE_INTERVAL:
            self._purge_logs()

    def _handle_requests(self) -> None:
        for request in collect_requests(self.paths.requests_dir):
            action = request.get("action")
            if action == ACTION_STOP:
                logger.info("Stop requested")
                self.request_stop()
            elif action == ACTION_RUN:
                job_id = str(request.get("job_id", ""))
                try:
                    self.run_now(job_id)
                except JobNotFoundError as e:
                    logger.warning(f"Run request ignored: {e.message}")
            else:
                logger.warning(f"Unknown request action: {action!r}")

    def _purge_logs(self) -> None:
        self._last_purge = time.monotonic()
        try:
            purge_old_logs(self.paths.logs_dir, self.config.logs.retention_days)
        except OSError as e:
            logger.warning(f"Log purge failed: {e}")
