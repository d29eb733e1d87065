"""
Directory layout under the ezcron base directory.

    <base>/jobs/               job definitions, hot-reloaded
    <base>/logs/               daemon-YYYY-MM-DD.log, job-YYYY-MM-DD.log
    <base>/run/daemon.pid      liveness marker
    <base>/run/state.json      published daemon state for out-of-process readers
    <base>/run/history.jsonl   persisted run records
    <base>/run/requests/       control-request channel (stop, run)
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class AppPaths:
    base_dir: Path

    @property
    def jobs_dir(self) -> Path:
        return self.base_dir / "jobs"

    @property
    def logs_dir(self) -> Path:
        return self.base_dir / "logs"

    @property
    def run_dir(self) -> Path:
        return self.base_dir / "run"

    @property
    def requests_dir(self) -> Path:
        return self.run_dir / "requests"

    @property
    def pid_file(self) -> Path:
        return self.run_dir / "daemon.pid"

    @property
    def state_file(self) -> Path:
        return self.run_dir / "state.json"

    @property
    def history_file(self) -> Path:
        return self.run_dir / "history.jsonl"

    def ensure_dirs(self) -> None:
        for d in (self.jobs_dir, self.logs_dir, self.run_dir, self.requests_dir):
            d.mkdir(parents=True, exist_ok=True)
