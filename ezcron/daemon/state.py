"""
Runtime markers under ``run/``: pid file, published state, request channel.

The daemon is the only writer of ``daemon.pid`` and ``state.json``; any
process may drop a request file into ``run/requests/``, which the daemon
consumes (reads, then deletes) on its next tick.

Request file shapes:
    {"action": "stop"}
    {"action": "run", "job_id": "backup"}
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from ezcron.scheduler.job import JobSnapshot, RunRecord
from ezcron.scheduler.reconciler import ReloadSummary

logger = logging.getLogger(__name__)

ACTION_STOP = "stop"
ACTION_RUN = "run"


@dataclass
class DaemonState:
    """Liveness and reload bookkeeping for one daemon process."""

    pid: int
    started_at: datetime | None = None
    running: bool = False
    last_reload: ReloadSummary | None = None

    def uptime(self, now: datetime | None = None) -> float | None:
        """Seconds since start, or None when not running."""
        if not self.running or self.started_at is None:
            return None
        now = now or datetime.now().astimezone()
        return max((now - self.started_at).total_seconds(), 0.0)

    @property
    def last_reload_error(self) -> str | None:
        if self.last_reload is None or not self.last_reload.errors:
            return None
        return "; ".join(self.last_reload.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "running": self.running,
            "last_reload": self.last_reload.to_dict() if self.last_reload else None,
            "last_reload_error": self.last_reload_error,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "DaemonState":
        last = d.get("last_reload")
        return cls(
            pid=int(d["pid"]),
            started_at=datetime.fromisoformat(d["started_at"]) if d.get("started_at") else None,
            running=bool(d.get("running", False)),
            last_reload=ReloadSummary.from_dict(last) if last else None,
        )


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# PID marker
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def read_pid(path: Path) -> int | None:
    try:
        return int(path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


def write_pid(path: Path, pid: int | None = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(pid if pid is not None else os.getpid()), encoding="utf-8")


def remove_pid(path: Path, pid: int | None = None) -> None:
    """Remove the marker, but only while it still names ``pid``."""
    pid = pid if pid is not None else os.getpid()
    if read_pid(path) == pid:
        path.unlink(missing_ok=True)


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    return True


def live_pid(path: Path) -> int | None:
    """The pid in the marker if that process is alive; stale markers read as None."""
    pid = read_pid(path)
    if pid is not None and pid_alive(pid):
        return pid
    return None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Published state
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def write_state_file(
    path: Path,
    state: DaemonState,
    jobs: Iterable[JobSnapshot],
    recent_runs: Iterable[RunRecord],
) -> None:
    document = {
        "updated_at": datetime.now().astimezone().isoformat(),
        **state.to_dict(),
        "jobs": [snapshot.to_dict() for snapshot in jobs],
        "recent_runs": [record.to_dict() for record in recent_runs],
    }
    _write_json_atomic(path, document)


def read_state_file(path: Path) -> dict[str, Any] | None:
    """The published state document, or None if missing or unreadable."""
    try:
        with open(path, encoding="utf-8") as f:
            document = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning(f"Unreadable state file {path}: {e}")
        return None
    return document if isinstance(document, dict) else None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Request channel
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def submit_request(requests_dir: Path, action: str, job_id: str | None = None) -> Path:
    """Drop a request for the daemon. Returns the request file path."""
    payload: dict[str, Any] = {"action": action}
    if job_id is not None:
        payload["job_id"] = job_id
    name = f"{datetime.now().strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:8]}.json"
    path = requests_dir / name
    _write_json_atomic(path, payload)
    return path


def collect_requests(requests_dir: Path) -> list[dict[str, Any]]:
    """Read and delete every pending request, oldest first. Corrupt files are dropped."""
    if not requests_dir.is_dir():
        return []
    requests: list[dict[str, Any]] = []
    for path in sorted(requests_dir.glob("*.json")):
        if path.name.startswith("."):
            continue
        try:
            with open(path, encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Dropping unreadable request {path.name}: {e}")
            payload = None
        path.unlink(missing_ok=True)
        if not isinstance(payload, dict):
            continue
        # Files from older clients carry only a job id.
        if "action" not in payload and "job_id" in payload:
            payload["action"] = ACTION_RUN
        requests.append(payload)
    return requests


def _write_json_atomic(path: Path, document: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
