"""
JobRegistry — the in-memory source of truth the scheduler reads.

Each entry pairs a Job with its cached next trigger. Entries are immutable
and swapped whole under a lock, so a reader (scheduler tick, status query)
sees either the old entry or the new one, never a mix.

Writers: the ConfigReconciler (upsert/remove) and the Scheduler (advance,
which only replaces the cached trigger).
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING, Iterator

from ezcron.scheduler.job import Job, JobSnapshot
from ezcron.scheduler.triggers import describe, next_trigger

if TYPE_CHECKING:
    from ezcron.scheduler.history import RunHistory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistryEntry:
    job: Job
    next_run: datetime | None

    @property
    def exhausted(self) -> bool:
        """No further trigger (e.g. an elapsed one-shot); idle until redefined."""
        return self.next_run is None


class JobRegistry:
    """
    Thread-safe id → RegistryEntry map.

    Usage:
        registry = JobRegistry()
        registry.upsert(job, now)
        for job_id in registry.due(now):
            ...
            registry.advance(job_id, now)
    """

    def __init__(self) -> None:
        self._entries: dict[str, RegistryEntry] = {}
        self._lock = threading.RLock()

    # ── Mutation ─────────────────────────────────────────────────────────────

    def upsert(self, job: Job, now: datetime | None = None) -> bool:
        """
        Insert or fully replace a job and recompute its next trigger.

        Returns True if the job was new.
        """
        now = now or datetime.now().astimezone()
        entry = RegistryEntry(job=job, next_run=next_trigger(job.schedule, now))
        with self._lock:
            is_new = job.id not in self._entries
            self._entries[job.id] = entry
        logger.debug(f"Registry {'added' if is_new else 'replaced'} {job.id}: next_run={entry.next_run}")
        return is_new

    def remove(self, job_id: str) -> bool:
        """Drop a job. In-flight runs are unaffected; only future triggers stop."""
        with self._lock:
            removed = self._entries.pop(job_id, None) is not None
        if removed:
            logger.debug(f"Registry removed {job_id}")
        return removed

    def advance(self, job_id: str, now: datetime) -> datetime | None:
        """Recompute the cached trigger after a firing. Returns the new value."""
        with self._lock:
            entry = self._entries.get(job_id)
            if entry is None:
                return None
            nxt = next_trigger(entry.job.schedule, now)
            self._entries[job_id] = replace(entry, next_run=nxt)
        return nxt

    # ── Queries ──────────────────────────────────────────────────────────────

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            entry = self._entries.get(job_id)
        return entry.job if entry else None

    def entry(self, job_id: str) -> RegistryEntry | None:
        with self._lock:
            return self._entries.get(job_id)

    def due(self, now: datetime) -> list[str]:
        """Ids of enabled jobs whose cached next trigger is at or before ``now``."""
        with self._lock:
            entries = list(self._entries.values())
        return sorted(
            e.job.id
            for e in entries
            if e.job.enabled and e.next_run is not None and e.next_run <= now
        )

    def lapsed(self, now: datetime) -> list[str]:
        """Ids of disabled jobs whose cached trigger has passed without a run."""
        with self._lock:
            entries = list(self._entries.values())
        return sorted(
            e.job.id
            for e in entries
            if not e.job.enabled and e.next_run is not None and e.next_run <= now
        )

    def list(self, history: "RunHistory | None" = None) -> list[JobSnapshot]:
        """Snapshots ordered by id, joined with the last run result if given."""
        with self._lock:
            entries = sorted(self._entries.values(), key=lambda e: e.job.id)
        return [
            JobSnapshot(
                id=e.job.id,
                name=e.job.name,
                enabled=e.job.enabled,
                schedule=describe(e.job.schedule),
                next_run=e.next_run,
                last_run_result=history.last(e.job.id) if history else None,
            )
            for e in entries
        ]

    def ids(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._entries

    def __iter__(self) -> Iterator[Job]:
        with self._lock:
            jobs = [e.job for e in self._entries.values()]
        return iter(jobs)
