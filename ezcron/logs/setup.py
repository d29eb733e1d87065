"""
Logging setup — console output plus the dated daemon log file.

Everything ezcron modules send through ``logging.getLogger(__name__)`` ends
up in ``logs/daemon-YYYY-MM-DD.log``. Per-run lines go to the job stream
through EventLogSink instead.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

DAEMON_PREFIX = "daemon"
JOB_PREFIX = "job"


def log_file_for(logs_dir: Path, prefix: str, day: datetime | None = None) -> Path:
    """``<logs_dir>/<prefix>-YYYY-MM-DD.log`` for the given (default: current) day."""
    day = day or datetime.now()
    return logs_dir / f"{prefix}-{day.strftime('%Y-%m-%d')}.log"


def timestamp(moment: datetime | None = None) -> str:
    """Local wall time with its UTC offset, e.g. ``2024-05-01 09:30:00+02:00``."""
    moment = (moment or datetime.now()).astimezone()
    return moment.isoformat(sep=" ", timespec="seconds")


class LineFormatter(logging.Formatter):
    """``<timestamp> <LEVEL> <message>``, the shape shared by both log streams."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(message)s")

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        return timestamp(datetime.fromtimestamp(record.created))


class DatedFileHandler(logging.FileHandler):
    """
    FileHandler that switches to a new ``<prefix>-YYYY-MM-DD.log`` when the
    local date changes. Old files are left alone; purge_old_logs removes them.
    """

    def __init__(self, logs_dir: Path, prefix: str = DAEMON_PREFIX) -> None:
        self._logs_dir = logs_dir
        self._prefix = prefix
        self._day = datetime.now().date()
        super().__init__(log_file_for(logs_dir, prefix), encoding="utf-8", delay=True)

    def emit(self, record: logging.LogRecord) -> None:
        created = datetime.fromtimestamp(record.created)
        if created.date() != self._day:
            self.acquire()
            try:
                self._day = created.date()
                if self.stream is not None:
                    self.stream.close()
                    self.stream = None
                self.baseFilename = str(log_file_for(self._logs_dir, self._prefix, created).absolute())
            finally:
                self.release()
        super().emit(record)


def setup_logging(
    log_dir: Path | None = None,
    console_level: int = logging.WARNING,
    file_level: int = logging.INFO,
) -> logging.Logger:
    """
    Setup ezcron logging.

    Args:
        log_dir: Directory for the daemon log file (default: ~/.ezcron/logs)
        console_level: Minimum level for console (stderr) output
        file_level: Minimum level for the daemon log file

    Returns:
        The configured ``ezcron`` logger
    """
    log_dir = log_dir or (Path.home() / ".ezcron" / "logs")
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("ezcron")
    logger.setLevel(min(console_level, file_level))

    # Clear existing handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    logger.addHandler(console_handler)

    file_handler = DatedFileHandler(log_dir, DAEMON_PREFIX)
    file_handler.setLevel(file_level)
    file_handler.setFormatter(LineFormatter())
    logger.addHandler(file_handler)

    logger.debug(f"Logging initialized. Directory: {log_dir}")
    return logger
