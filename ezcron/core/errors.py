"""
ezcron exception hierarchy.

Every error in the system inherits from EzcronError.
Configuration and per-run errors are recovered where they happen (logged,
recorded, the loop continues). Only control errors reach the caller.

Usage:
    try:
        controller.start()
    except DaemonAlreadyRunning as e:
        # Report and exit non-zero
    except EzcronError as e:
        # Handle any ezcron error
"""

from __future__ import annotations

from pathlib import Path


class EzcronError(Exception):
    """Base exception for all ezcron errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# ━━━ Configuration ━━━


class ConfigError(EzcronError):
    """Daemon settings are invalid, missing, or malformed."""

    pass


class ConfigValidationError(EzcronError):
    """A job definition was rejected: bad JSON, missing fields, duplicate id."""

    def __init__(
        self,
        message: str,
        path: Path | None = None,
        job_id: str = "",
        details: dict | None = None,
    ):
        self.path = path
        self.job_id = job_id
        super().__init__(message, details)


class ScheduleComputeError(ConfigValidationError):
    """Malformed cron expression or impossible simple schedule combination."""

    pass


# ━━━ Execution ━━━


class ExecutionSpawnError(EzcronError):
    """The command could not be started (missing binary, permissions, bad cwd)."""

    pass


class TimeoutExceeded(EzcronError):
    """A run outlived its timeout and was terminated."""

    def __init__(self, message: str, timeout_seconds: float = 0, details: dict | None = None):
        self.timeout_seconds = timeout_seconds
        super().__init__(message, details)


# ━━━ Control plane ━━━


class ControlError(EzcronError):
    """Misuse of start/stop/status/run. Surfaced to the caller with a non-zero exit."""

    pass


class DaemonAlreadyRunning(ControlError):
    """start was requested while a live daemon owns the pid marker."""

    def __init__(self, pid: int):
        self.pid = pid
        super().__init__(f"daemon is already running (pid={pid})", {"pid": pid})


class DaemonNotRunning(ControlError):
    """stop (or a live query) was requested with no daemon running."""

    def __init__(self, message: str = "daemon is not running"):
        super().__init__(message)


class JobNotFoundError(ControlError):
    """A manual run named a job id that is not loaded."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"job not found: {job_id}", {"job_id": job_id})
