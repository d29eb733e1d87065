"""
Executor — runs one job's command and produces its RunRecord.

Lifecycle of a run:
    spawn (own process group) → drain stderr tail → wait with timeout
      ├─ exited           → success (exit 0) / failed (anything else)
      ├─ timeout elapsed  → SIGTERM group, wait grace, SIGKILL group → timeout
      └─ spawn OSError    → failed with the diagnostic, no exit code

Whatever the path, the finalized record is appended to RunHistory exactly
once. Failed and timed-out runs are never retried.

Environment: a job without ``env`` inherits the daemon's environment; a job
with ``env`` gets exactly those variables and nothing else.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from datetime import datetime

from ezcron.core.bus import EventBus
from ezcron.core.errors import ExecutionSpawnError, TimeoutExceeded
from ezcron.core.events import Event, EventType
from ezcron.scheduler.history import RunHistory
from ezcron.scheduler.job import Job, RunRecord, RunStatus, new_run_id

logger = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 3.0
DEFAULT_STDERR_TAIL_BYTES = 2048
_STREAM_CLOSE_TIMEOUT = 1.0  # after exit, how long to wait for stderr EOF


class _StderrTail:
    """Keeps only the trailing ``limit`` bytes of a stream."""

    def __init__(self, limit: int) -> None:
        self._limit = limit
        self._buf = bytearray()

    async def drain(self, stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            self._buf.extend(chunk)
            if len(self._buf) > self._limit:
                del self._buf[: len(self._buf) - self._limit]

    def text(self) -> str | None:
        text = self._buf.decode("utf-8", errors="replace").strip()
        return text or None


class Executor:
    """
    Spawns job commands as independent asyncio tasks.

    Usage:
        executor = Executor(history, bus=bus)
        task = executor.spawn(job, trigger_time=due_at)   # fire-and-forget
        record = await executor.execute(job)              # or await directly
        await executor.drain(timeout=30)                  # on shutdown
    """

    def __init__(
        self,
        history: RunHistory,
        bus: EventBus | None = None,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        stderr_tail_bytes: int = DEFAULT_STDERR_TAIL_BYTES,
    ) -> None:
        self._history = history
        self._bus = bus
        self._grace = grace_seconds
        self._tail_bytes = stderr_tail_bytes
        self._in_flight: set[asyncio.Task] = set()

    # ── Dispatch ─────────────────────────────────────────────────────────────

    def spawn(
        self,
        job: Job,
        trigger_time: datetime | None = None,
        trigger: str = "schedule",
    ) -> asyncio.Task:
        """Start ``execute`` as a background task; the caller does not wait."""
        task = asyncio.create_task(
            self.execute(job, trigger_time=trigger_time, trigger=trigger),
            name=f"run:{job.id}",
        )
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for in-flight runs without cancelling them. True if all finished."""
        if not self._in_flight:
            return True
        done, pending = await asyncio.wait(set(self._in_flight), timeout=timeout)
        if pending:
            logger.warning(f"{len(pending)} run(s) still in flight after {timeout}s")
        return not pending

    # ── Execution ────────────────────────────────────────────────────────────

    async def execute(
        self,
        job: Job,
        trigger_time: datetime | None = None,
        trigger: str = "schedule",
    ) -> RunRecord:
        """Run the job's command to completion (or timeout) and record it."""
        run_id = new_run_id()
        start_time = datetime.now().astimezone()
        trigger_time = trigger_time or start_time

        await self._emit(
            EventType.RUN_START,
            {
                "job_id": job.id,
                "run_id": run_id,
                "trigger": trigger,
                "command": job.command.program,
            },
        )

        status, exit_code, summary = RunStatus.FAILED, None, None
        try:
            status, exit_code, summary = await self._run(job, run_id)
        except asyncio.CancelledError:
            # The child keeps running in its own session; it is not signalled.
            summary = "run abandoned: daemon shut down before it finished; child process left running"
            raise
        except Exception as e:
            logger.exception(f"Job {job.id!r} run {run_id} crashed in executor")
            summary = f"executor error: {e}"
        finally:
            record = RunRecord(
                run_id=run_id,
                job_id=job.id,
                trigger=trigger,
                trigger_time=trigger_time,
                start_time=start_time,
                end_time=datetime.now().astimezone(),
                status=status,
                exit_code=exit_code,
                stderr_summary=summary,
            )
            self._history.append(record)

        await self._emit(
            EventType.RUN_FINISH,
            {
                "job_id": job.id,
                "run_id": run_id,
                "status": record.status.value,
                "exit_code": record.exit_code,
                "duration": round(record.duration.total_seconds(), 3),
                "message": record.stderr_summary,
            },
            level="INFO" if record.status is RunStatus.SUCCESS else "ERROR",
        )
        return record

    async def _run(self, job: Job, run_id: str) -> tuple[RunStatus, int | None, str | None]:
        command = job.command
        cwd = command.working_dir or os.getcwd()
        env = dict(command.env) if command.env is not None else None

        try:
            process = await asyncio.create_subprocess_exec(
                *command.argv(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            err = ExecutionSpawnError(f"spawn failed: {e}", {"program": command.program})
            logger.warning(f"Job {job.id!r} run {run_id}: {err.message}")
            return RunStatus.FAILED, None, err.message

        logger.debug(f"Job {job.id!r} run {run_id} started pid={process.pid}")
        tail = _StderrTail(self._tail_bytes)
        reader = asyncio.create_task(tail.drain(process.stderr))

        try:
            await asyncio.wait_for(process.wait(), timeout=job.timeout_seconds)
        except TimeoutError:
            await self._terminate(process)
            await self._finish_reader(reader)
            err = TimeoutExceeded(
                f"timed out after {job.timeout_seconds:g}s", timeout_seconds=job.timeout_seconds
            )
            logger.warning(f"Job {job.id!r} run {run_id}: {err.message}")
            stderr = tail.text()
            return RunStatus.TIMEOUT, None, f"{err.message}\n{stderr}" if stderr else err.message

        await self._finish_reader(reader)
        code = process.returncode
        if code == 0:
            return RunStatus.SUCCESS, 0, tail.text()
        return RunStatus.FAILED, code, tail.text() or _describe_exit(code)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, wait the grace interval, then SIGKILL."""
        _signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self._grace)
            return
        except TimeoutError:
            logger.debug(f"pid={process.pid} ignored SIGTERM, sending SIGKILL")
        _signal_group(process, signal.SIGKILL)
        await process.wait()

    @staticmethod
    async def _finish_reader(reader: asyncio.Task) -> None:
        # A grandchild may still hold stderr open; do not wait on it forever.
        try:
            await asyncio.wait_for(reader, timeout=_STREAM_CLOSE_TIMEOUT)
        except TimeoutError:
            pass

    async def _emit(self, event_type: str, data: dict, level: str = "INFO") -> None:
        if self._bus is not None:
            await self._bus.emit(Event(type=event_type, data=data, source="executor", level=level))


def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    # start_new_session=True made the child its own group leader.
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        return
    except PermissionError:
        try:
            process.send_signal(sig)
        except ProcessLookupError:
            pass


def _describe_exit(code: int | None) -> str:
    if code is not None and code < 0:
        try:
            return f"killed by {signal.Signals(-code).name}"
        except ValueError:
            return f"killed by signal {-code}"
    return f"exit code {code}"
