"""
RunHistory — append-only per-job record of finished runs.

Records within a job are kept ordered by trigger_time even when runs finish
out of order (overlapping executions). A per-job "last result" pointer
answers status queries in O(1).

Optional persistence: one JSON object per line in ``run/history.jsonl``.
The file is append-only while the daemon runs and compacted on load.
"""

from __future__ import annotations

import bisect
import json
import logging
import threading
from pathlib import Path

from ezcron.scheduler.job import RunRecord

logger = logging.getLogger(__name__)


class RunHistory:
    """
    Thread-safe run record store.

    Usage:
        history = RunHistory(path=paths.history_file)
        history.load()
        history.append(record)
        history.last("backup")
        history.tail(20, job_id="backup")
    """

    def __init__(self, path: Path | None = None, max_records_per_job: int = 200) -> None:
        self._path = path
        self._max = max_records_per_job
        self._by_job: dict[str, list[RunRecord]] = {}
        self._last: dict[str, RunRecord] = {}
        self._order: list[RunRecord] = []  # every record, in append order
        self._run_ids: set[str] = set()
        self._lock = threading.Lock()

    # ── Writes ───────────────────────────────────────────────────────────────

    def append(self, record: RunRecord) -> bool:
        """
        Add a finalized record. A run_id is accepted once; repeats are
        ignored and return False.
        """
        with self._lock:
            if record.run_id in self._run_ids:
                logger.warning(f"Duplicate run record ignored: {record.run_id}")
                return False
            self._insert(record)
            if self._path is not None:
                self._write_line(record)
        return True

    def _insert(self, record: RunRecord) -> None:
        records = self._by_job.setdefault(record.job_id, [])
        bisect.insort(records, record, key=lambda r: r.trigger_time)
        self._run_ids.add(record.run_id)
        self._order.append(record)
        self._last[record.job_id] = records[-1]

        if len(records) > self._max:
            dropped = records.pop(0)
            self._run_ids.discard(dropped.run_id)
            self._order.remove(dropped)

    def _write_line(self, record: RunRecord) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record.to_dict()) + "\n")
        except OSError as e:
            logger.warning(f"RunHistory persist failed: {e}")

    # ── Reads ────────────────────────────────────────────────────────────────

    def last(self, job_id: str) -> RunRecord | None:
        with self._lock:
            return self._last.get(job_id)

    def records(self, job_id: str) -> list[RunRecord]:
        """All retained records of one job, oldest trigger first."""
        with self._lock:
            return list(self._by_job.get(job_id, []))

    def tail(self, n: int, job_id: str | None = None) -> list[RunRecord]:
        """The most recent ``n`` records, newest last."""
        if n <= 0:
            return []
        with self._lock:
            if job_id is not None:
                return list(self._by_job.get(job_id, [])[-n:])
            return list(self._order[-n:])

    def __len__(self) -> int:
        with self._lock:
            return len(self._order)

    # ── Persistence ──────────────────────────────────────────────────────────

    def load(self, compact: bool = True) -> int:
        """
        Load persisted records, skipping corrupt lines.

        With ``compact`` the file is rewritten without the skipped lines and
        without records trimmed by ``max_records_per_job``. Readers that do not
        own the file (the out-of-process controller) pass ``compact=False``.
        """
        if self._path is None or not self._path.exists():
            return 0

        loaded = 0
        with self._lock:
            with open(self._path, encoding="utf-8") as f:
                for lineno, line in enumerate(f, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        record = RunRecord.from_dict(json.loads(line))
                    except (ValueError, KeyError, TypeError) as e:
                        logger.warning(f"Skipping corrupt history line {lineno}: {e}")
                        continue
                    if record.run_id in self._run_ids:
                        continue
                    self._insert(record)
                    loaded += 1
            if compact:
                self._compact()

        logger.debug(f"RunHistory loaded {loaded} records from {self._path}")
        return loaded

    def _compact(self) -> None:
        tmp = self._path.with_suffix(".jsonl.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            for record in self._order:
                f.write(json.dumps(record.to_dict()) + "\n")
        tmp.replace(self._path)
