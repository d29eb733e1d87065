"""
Scheduler Job — the core data model.

A Job describes what to run and when. Jobs are immutable values: a changed
definition file replaces the whole Job, never patches it.

Schedule variants (closed set):
    CronSchedule(expression="0 9 * * 1-5")
    SimpleSchedule(repeat=Repeat.DAILY, time="09:00")
    SimpleSchedule(repeat=Repeat.WEEKLY, time="09:00", weekday=1)   # 1=Mon..7=Sun
    SimpleSchedule(repeat=Repeat.MONTHLY, time="09:00", day=31)
    SimpleSchedule(repeat=Repeat.EVERYMINUTE)
    SimpleSchedule(repeat=Repeat.ONCE, once_at=<aware datetime>)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

DEFAULT_TIMEOUT_SECONDS = 3600


class Repeat(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    EVERYMINUTE = "everyminute"
    ONCE = "once"


class RunStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class CronSchedule:
    expression: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "cron", "expression": self.expression}


@dataclass(frozen=True)
class SimpleSchedule:
    repeat: Repeat
    time: str | None = None       # "HH:MM", local
    weekday: int | None = None    # 1=Monday .. 7=Sunday
    day: int | None = None        # 1..31
    once_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": "simple", "repeat": self.repeat.value}
        if self.time is not None:
            d["time"] = self.time
        if self.weekday is not None:
            d["weekday"] = self.weekday
        if self.day is not None:
            d["day"] = self.day
        if self.once_at is not None:
            d["once_at"] = self.once_at.isoformat()
        return d


Schedule = CronSchedule | SimpleSchedule


@dataclass(frozen=True)
class CommandSpec:
    program: str
    args: tuple[str, ...] = ()
    working_dir: str | None = None
    env: dict[str, str] | None = None  # None = inherit the daemon's environment

    def argv(self) -> list[str]:
        return [self.program, *self.args]

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"program": self.program, "args": list(self.args)}
        if self.working_dir is not None:
            d["working_dir"] = self.working_dir
        if self.env is not None:
            d["env"] = dict(self.env)
        return d


@dataclass(frozen=True)
class Job:
    """A scheduled command."""

    id: str
    name: str
    schedule: Schedule
    command: CommandSpec
    enabled: bool = True
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    @property
    def timeout(self) -> timedelta:
        return timedelta(seconds=self.timeout_seconds)

    def to_dict(self) -> dict[str, Any]:
        """Serialise to the on-disk definition format (see definitions.parse_job)."""
        timeout: float | int = self.timeout_seconds
        if float(timeout).is_integer():
            timeout = int(timeout)
        return {
            "id": self.id,
            "name": self.name,
            "enabled": self.enabled,
            "schedule": self.schedule.to_dict(),
            "command": self.command.to_dict(),
            "timeout_seconds": timeout,
        }


def new_run_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class RunRecord:
    """Outcome of one execution attempt. Immutable once built."""

    job_id: str
    trigger_time: datetime
    start_time: datetime
    end_time: datetime
    status: RunStatus
    exit_code: int | None = None
    stderr_summary: str | None = None
    trigger: str = "schedule"   # "schedule" | "manual"
    run_id: str = field(default_factory=new_run_id)

    @property
    def duration(self) -> timedelta:
        return self.end_time - self.start_time

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "job_id": self.job_id,
            "trigger": self.trigger,
            "trigger_time": self.trigger_time.isoformat(),
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "status": self.status.value,
            "exit_code": self.exit_code,
            "stderr_summary": self.stderr_summary,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "RunRecord":
        return cls(
            run_id=d["run_id"],
            job_id=d["job_id"],
            trigger=d.get("trigger", "schedule"),
            trigger_time=datetime.fromisoformat(d["trigger_time"]),
            start_time=datetime.fromisoformat(d["start_time"]),
            end_time=datetime.fromisoformat(d["end_time"]),
            status=RunStatus(d["status"]),
            exit_code=d.get("exit_code"),
            stderr_summary=d.get("stderr_summary"),
        )


@dataclass(frozen=True)
class JobSnapshot:
    """Read projection of a job: registry entry + last history result."""

    id: str
    name: str
    enabled: bool
    schedule: str
    next_run: datetime | None
    last_run_result: RunRecord | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "enabled": self.enabled,
            "schedule": self.schedule,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "last_run_result": self.last_run_result.to_dict() if self.last_run_result else None,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "JobSnapshot":
        last = d.get("last_run_result")
        return cls(
            id=d["id"],
            name=d["name"],
            enabled=bool(d["enabled"]),
            schedule=d["schedule"],
            next_run=datetime.fromisoformat(d["next_run"]) if d.get("next_run") else None,
            last_run_result=RunRecord.from_dict(last) if last else None,
        )
