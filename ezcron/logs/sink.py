"""
EventLogSink — writes run events to ``logs/job-YYYY-MM-DD.log``.

One line per event:

    2024-05-01 02:00:00+02:00 INFO job_id=backup run_id=4f1c… event=start trigger=schedule command=/usr/bin/backup
    2024-05-01 02:03:12+02:00 ERROR job_id=backup run_id=4f1c… event=failed exit_code=2 duration=192.4 message="disk full"

Also home to the readers of both streams: ``purge_old_logs`` (retention)
and ``read_log_lines`` (the ``logs`` query).
"""

from __future__ import annotations

import json
import logging
import re
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any

from ezcron.core.bus import EventBus
from ezcron.core.events import Event, EventType
from ezcron.logs.setup import DAEMON_PREFIX, JOB_PREFIX, log_file_for, timestamp

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30
_LOG_NAME = re.compile(rf"^({DAEMON_PREFIX}|{JOB_PREFIX})-(\d{{4}}-\d{{2}}-\d{{2}})\.log$")
_BARE_VALUE = re.compile(r"^[^\s\"=]+$")


class EventLogSink:
    """
    Bus subscriber for the per-run log stream.

    Usage:
        sink = EventLogSink(paths.logs_dir)
        sink.attach(bus)
        ...
        sink.detach(bus)
    """

    def __init__(self, logs_dir: Path) -> None:
        self._logs_dir = logs_dir
        self.lines_written = 0

    def attach(self, bus: EventBus) -> None:
        bus.on("run:*", self.handle)

    def detach(self, bus: EventBus) -> None:
        bus.off("run:*", self.handle)

    async def handle(self, event: Event) -> None:
        data = event.data
        if event.type == EventType.RUN_START:
            fields = {
                "event": "start",
                "trigger": data.get("trigger"),
                "command": data.get("command"),
            }
        elif event.type == EventType.RUN_FINISH:
            fields = {
                "event": data.get("status"),
                "exit_code": data.get("exit_code"),
                "duration": data.get("duration"),
                "message": data.get("message"),
            }
        else:
            return
        self.write(event.level, data.get("job_id"), data.get("run_id"), fields)

    def write(
        self,
        level: str,
        job_id: str | None,
        run_id: str | None,
        fields: dict[str, Any],
    ) -> None:
        line = format_line(level, fields, job_id=job_id, run_id=run_id)
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
            with open(log_file_for(self._logs_dir, JOB_PREFIX), "a", encoding="utf-8") as f:
                f.write(line + "\n")
            self.lines_written += 1
        except OSError as e:
            logger.warning(f"Job log write failed: {e}")


def format_line(
    level: str,
    fields: dict[str, Any],
    job_id: str | None = None,
    run_id: str | None = None,
    moment: datetime | None = None,
) -> str:
    parts = [timestamp(moment), level]
    if job_id:
        parts.append(f"job_id={job_id}")
    if run_id:
        parts.append(f"run_id={run_id}")
    for key, value in fields.items():
        if value is None:
            continue
        parts.append(f"{key}={_format_value(value)}")
    return " ".join(parts)


def _format_value(value: Any) -> str:
    text = str(value)
    if _BARE_VALUE.match(text):
        return text
    return json.dumps(text, ensure_ascii=False)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Retention & Reading
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _parse_log_name(path: Path) -> tuple[str, date] | None:
    match = _LOG_NAME.match(path.name)
    if not match:
        return None
    try:
        return match.group(1), date.fromisoformat(match.group(2))
    except ValueError:
        return None


def purge_old_logs(
    logs_dir: Path,
    keep_days: int = DEFAULT_RETENTION_DAYS,
    today: date | None = None,
) -> list[Path]:
    """Delete daemon-/job- log files dated more than ``keep_days`` ago."""
    if not logs_dir.is_dir():
        return []
    today = today or date.today()
    cutoff = today - timedelta(days=keep_days)
    removed: list[Path] = []
    for path in sorted(logs_dir.iterdir()):
        parsed = _parse_log_name(path)
        if parsed is None or not path.is_file():
            continue
        if parsed[1] < cutoff:
            try:
                path.unlink()
                removed.append(path)
            except OSError as e:
                logger.warning(f"Could not remove old log {path.name}: {e}")
    if removed:
        logger.info(f"Purged {len(removed)} log file(s) older than {keep_days} days")
    return removed


def read_log_lines(logs_dir: Path, job_id: str | None = None, tail: int = 50) -> list[str]:
    """
    The last ``tail`` log lines, oldest first.

    With ``job_id`` only the job stream is read and only lines tagged
    ``job_id=<id>`` are kept. Without it both streams are merged by
    timestamp. Files are read newest day first until enough lines are found.
    """
    if tail <= 0 or not logs_dir.is_dir():
        return []

    by_day: dict[date, list[Path]] = {}
    for path in logs_dir.iterdir():
        parsed = _parse_log_name(path)
        if parsed is None:
            continue
        prefix, day = parsed
        if job_id is not None and prefix != JOB_PREFIX:
            continue
        by_day.setdefault(day, []).append(path)

    needle = f" job_id={job_id} " if job_id is not None else None
    collected: list[str] = []
    for day in sorted(by_day, reverse=True):
        lines: list[str] = []
        for path in sorted(by_day[day]):
            try:
                with open(path, encoding="utf-8", errors="replace") as f:
                    lines.extend(line.rstrip("\n") for line in f if line.strip())
            except OSError as e:
                logger.warning(f"Could not read {path.name}: {e}")
        if needle is not None:
            lines = [line for line in lines if needle in line + " "]
        # Lines start with the timestamp; a stable sort interleaves the streams.
        lines.sort(key=lambda line: line[:25])
        collected = lines + collected
        if len(collected) >= tail:
            break
    return collected[-tail:]
