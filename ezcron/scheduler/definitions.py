"""
Job definition files — parse, validate and write ``jobs/<id>.json``.

File shape:
    {
      "id": "backup", "name": "Nightly backup", "enabled": true,
      "schedule": {"type": "cron", "expression": "0 2 * * *"},
      "command": {"program": "/usr/local/bin/backup", "args": ["--full"],
                  "working_dir": "/srv", "env": {"LANG": "C"}},
      "timeout_seconds": 600
    }

Every failure raises ConfigValidationError (ScheduleComputeError for
schedule problems) carrying the offending path.
"""

from __future__ import annotations

import json
import math
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any

from ezcron.core.errors import ConfigValidationError, ScheduleComputeError
from ezcron.scheduler.job import (
    DEFAULT_TIMEOUT_SECONDS,
    CommandSpec,
    CronSchedule,
    Job,
    Repeat,
    Schedule,
    SimpleSchedule,
)
from ezcron.scheduler.triggers import validate_schedule

DEFINITION_SUFFIX = ".json"


def parse_job(data: Any, path: Path | None = None) -> Job:
    """Build a validated Job from a decoded definition document."""
    if not isinstance(data, dict):
        raise ConfigValidationError("definition must be a JSON object", path=path)

    job_id = _require_str(data, "id", path)
    name = _require_str(data, "name", path, job_id=job_id)

    enabled = data.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ConfigValidationError("enabled must be a boolean", path=path, job_id=job_id)

    timeout = data.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)
    if (
        isinstance(timeout, bool)
        or not isinstance(timeout, (int, float))
        or not math.isfinite(timeout)
        or timeout < 1
    ):
        raise ConfigValidationError(
            "timeout_seconds must be a number >= 1", path=path, job_id=job_id
        )

    try:
        schedule = _parse_schedule(data.get("schedule"))
        validate_schedule(schedule)
    except ScheduleComputeError as e:
        raise ScheduleComputeError(f"schedule: {e.message}", path=path, job_id=job_id) from e

    command = _parse_command(data.get("command"), path, job_id)

    return Job(
        id=job_id,
        name=name,
        enabled=enabled,
        schedule=schedule,
        command=command,
        timeout_seconds=timeout,
    )


def dump_job(job: Job) -> dict[str, Any]:
    """Inverse of parse_job."""
    return job.to_dict()


def load_job_file(path: Path) -> Job:
    """Read and validate one definition file."""
    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigValidationError(f"cannot read definition: {e}", path=path) from e
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigValidationError(f"invalid JSON: {e}", path=path) from e
    return parse_job(data, path=path)


def write_job_file(jobs_dir: Path, job: Job) -> Path:
    """
    Write ``<jobs_dir>/<id>.json`` atomically (temp file + rename), so the
    watcher never observes a half-written definition.
    """
    jobs_dir.mkdir(parents=True, exist_ok=True)
    target = jobs_dir / f"{job.id}{DEFINITION_SUFFIX}"
    fd, tmp = tempfile.mkstemp(dir=jobs_dir, prefix=f".{job.id}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(dump_job(job), f, indent=2)
            f.write("\n")
        os.replace(tmp, target)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
    return target


def is_definition_file(path: Path) -> bool:
    return path.suffix == DEFINITION_SUFFIX and not path.name.startswith(".")


def definition_files(jobs_dir: Path) -> list[Path]:
    """All candidate definition files, sorted by name."""
    if not jobs_dir.is_dir():
        return []
    return sorted(p for p in jobs_dir.iterdir() if p.is_file() and is_definition_file(p))


# ━━━ Internal helpers ━━━


def _require_str(data: dict, key: str, path: Path | None, job_id: str = "") -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigValidationError(f"{key} is required", path=path, job_id=job_id)
    return value


def _parse_schedule(raw: Any) -> Schedule:
    if not isinstance(raw, dict):
        raise ScheduleComputeError("schedule must be an object")

    kind = raw.get("type")
    if kind == "cron":
        expression = raw.get("expression")
        if not isinstance(expression, str) or not expression.strip():
            raise ScheduleComputeError("expression is required for cron")
        return CronSchedule(expression=expression.strip())

    if kind == "simple":
        try:
            repeat = Repeat(raw.get("repeat"))
        except ValueError:
            raise ScheduleComputeError(f"unknown repeat: {raw.get('repeat')!r}") from None

        time_ = raw.get("time")
        if time_ is not None and not isinstance(time_, str):
            raise ScheduleComputeError("time must be a string HH:MM")

        return SimpleSchedule(
            repeat=repeat,
            time=time_,
            weekday=_optional_int(raw, "weekday"),
            day=_optional_int(raw, "day"),
            once_at=_parse_once_at(raw.get("once_at")),
        )

    raise ScheduleComputeError(f"unknown schedule type: {kind!r}")


def _optional_int(raw: dict, key: str) -> int | None:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ScheduleComputeError(f"{key} must be an integer")
    return value


def _parse_once_at(value: Any) -> datetime | None:
    """Accept 'YYYY-MM-DD HH:MM' or ISO-8601; naive values are local time."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ScheduleComputeError("once_at must be a timestamp string")
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        raise ScheduleComputeError(f"invalid once_at: {value!r}") from None
    return parsed.astimezone()


def _parse_command(raw: Any, path: Path | None, job_id: str) -> CommandSpec:
    if not isinstance(raw, dict):
        raise ConfigValidationError("command must be an object", path=path, job_id=job_id)

    program = raw.get("program")
    if not isinstance(program, str) or not program.strip():
        raise ConfigValidationError("command.program is required", path=path, job_id=job_id)
    if program != program.strip() or "\x00" in program:
        raise ConfigValidationError(
            f"command.program is not a usable path: {program!r}", path=path, job_id=job_id
        )

    args = raw.get("args", [])
    if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
        raise ConfigValidationError(
            "command.args must be a list of strings", path=path, job_id=job_id
        )

    working_dir = raw.get("working_dir")
    if working_dir is not None and (not isinstance(working_dir, str) or not working_dir):
        raise ConfigValidationError(
            "command.working_dir must be a non-empty string", path=path, job_id=job_id
        )

    env = raw.get("env")
    if env is not None:
        if not isinstance(env, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in env.items()
        ):
            raise ConfigValidationError(
                "command.env must map strings to strings", path=path, job_id=job_id
            )
        env = dict(env)

    return CommandSpec(
        program=program,
        args=tuple(args),
        working_dir=working_dir,
        env=env,
    )
