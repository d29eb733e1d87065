"""
ConfigReconciler — keeps the JobRegistry in step with ``jobs/*.json``.

Filesystem events (from watchfiles) are pushed onto a queue consumed by a
single task, so the registry has exactly one writer for definitions. Bursts
of events for the same file within the debounce window collapse into one
reconciliation pass.

Per changed file:
    exists + valid       → upsert (added / updated)
    exists + invalid     → rejected; the previous definition stays loaded
    deleted              → remove the id that file last defined

A rejected file is logged and reported, never raised: one bad file cannot
stop the daemon or affect other jobs.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable

import watchfiles

from ezcron.core.bus import EventBus
from ezcron.core.errors import ConfigValidationError
from ezcron.core.events import Event, EventType
from ezcron.scheduler.definitions import definition_files, is_definition_file, load_job_file
from ezcron.scheduler.registry import JobRegistry

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_MS = 300


@dataclass
class ReloadSummary:
    """Counts from one reconciliation pass."""

    timestamp: datetime = field(default_factory=lambda: datetime.now().astimezone())
    added: int = 0
    updated: int = 0
    removed: int = 0
    rejected: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated or self.removed or self.rejected)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "added": self.added,
            "updated": self.updated,
            "removed": self.removed,
            "rejected": self.rejected,
            "errors": list(self.errors),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ReloadSummary":
        return cls(
            timestamp=datetime.fromisoformat(d["timestamp"]),
            added=d.get("added", 0),
            updated=d.get("updated", 0),
            removed=d.get("removed", 0),
            rejected=d.get("rejected", 0),
            errors=list(d.get("errors", [])),
        )


class ConfigReconciler:
    """
    Watches the definitions directory and applies changes to the registry.

    Usage:
        reconciler = ConfigReconciler(paths.jobs_dir, registry, bus=bus,
                                      on_summary=daemon.record_reload)
        reconciler.reconcile_all()    # initial load
        await reconciler.start()      # begin watching
        ...
        await reconciler.stop()
    """

    def __init__(
        self,
        jobs_dir: Path,
        registry: JobRegistry,
        bus: EventBus | None = None,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        on_summary: Callable[[ReloadSummary], None] | None = None,
        watch: bool = True,
    ) -> None:
        self._jobs_dir = jobs_dir
        self._registry = registry
        self._bus = bus
        self._debounce = debounce_ms / 1000
        self._debounce_ms = debounce_ms
        self._on_summary = on_summary
        self._watch_enabled = watch
        self._owners: dict[str, str] = {}  # definition file name → job id it defines
        self._blocked: dict[str, set[str]] = {}  # job id → file names rejected as its duplicates
        self._queue: asyncio.Queue[Path] = asyncio.Queue()
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self.passes = 0

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the queue consumer and (if enabled) the filesystem watcher."""
        if self._tasks:
            return
        self._stop_event.clear()
        self._tasks.append(asyncio.create_task(self._consume(), name="reconciler"))
        if self._watch_enabled:
            self._tasks.append(asyncio.create_task(self._watch(), name="reconciler-watch"))
        logger.info(f"Watching {self._jobs_dir} for job definitions")

    async def stop(self) -> None:
        self._stop_event.set()
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Reconciler stopped")

    def notify(self, path: Path) -> None:
        """Queue a changed definition path for reconciliation."""
        self._queue.put_nowait(Path(path))

    # ── Reconciliation ───────────────────────────────────────────────────────

    def reconcile_all(self, now: datetime | None = None) -> ReloadSummary:
        """Full pass over the directory: load every file, drop vanished ones."""
        summary = ReloadSummary()
        present = definition_files(self._jobs_dir)
        for path in present:
            self._apply(path, summary, now)
        present_names = {p.name for p in present}
        for name in [n for n in self._owners if n not in present_names]:
            self._delete(self._jobs_dir / name, summary, now)
        self._finish(summary)
        return summary

    def reconcile_paths(self, paths: Iterable[Path], now: datetime | None = None) -> ReloadSummary:
        """Reconcile just the given files (one pass, one summary)."""
        summary = ReloadSummary()
        # Watcher paths may be absolute or symlink-resolved; the directory is
        # flat, so the file name is the identity.
        for name in sorted({Path(p).name for p in paths}):
            path = self._jobs_dir / name
            if path.exists():
                self._apply(path, summary, now)
            else:
                self._delete(path, summary, now)
        self._finish(summary)
        return summary

    def _apply(self, path: Path, summary: ReloadSummary, now: datetime | None) -> None:
        self._forget_blocked(path.name)
        try:
            job = load_job_file(path)
        except ConfigValidationError as e:
            self._reject(path, e, summary)
            return

        owner = self._owner_of(job.id)
        if owner is not None and owner != path.name:
            # Retried once the owner lets go of the id.
            self._blocked.setdefault(job.id, set()).add(path.name)
            self._reject(
                path,
                ConfigValidationError(
                    f"duplicate job id {job.id!r} (already defined by {owner})",
                    path=path,
                    job_id=job.id,
                ),
                summary,
            )
            return

        previous_id = self._owners.get(path.name)
        if previous_id is not None and previous_id != job.id:
            # The file now defines a different job; release the old id.
            self._registry.remove(previous_id)
            summary.removed += 1
            self._emit(EventType.RELOAD_REMOVED, {"job_id": previous_id, "path": path.name})

        is_new = self._registry.upsert(job, now)
        self._owners[path.name] = job.id
        if is_new:
            summary.added += 1
            self._emit(EventType.RELOAD_ADDED, {"job_id": job.id, "path": path.name})
        else:
            summary.updated += 1
            self._emit(EventType.RELOAD_UPDATED, {"job_id": job.id, "path": path.name})

        if previous_id is not None and previous_id != job.id:
            self._retry_blocked(previous_id, summary, now)

    def _delete(self, path: Path, summary: ReloadSummary, now: datetime | None) -> None:
        self._forget_blocked(path.name)
        job_id = self._owners.pop(path.name, None)
        if job_id is None:
            # Never loaded from this path; fall back to the <id>.json convention.
            if self._owner_of(path.stem) is not None:
                return
            job_id = path.stem
        if self._registry.remove(job_id):
            summary.removed += 1
            self._emit(EventType.RELOAD_REMOVED, {"job_id": job_id, "path": path.name})
        self._retry_blocked(job_id, summary, now)

    def _retry_blocked(self, job_id: str, summary: ReloadSummary, now: datetime | None) -> None:
        """Re-apply files that were rejected as duplicates of a now-free id."""
        for name in sorted(self._blocked.pop(job_id, ())):
            path = self._jobs_dir / name
            if path.exists():
                self._apply(path, summary, now)

    def _forget_blocked(self, name: str) -> None:
        for job_id in list(self._blocked):
            self._blocked[job_id].discard(name)
            if not self._blocked[job_id]:
                del self._blocked[job_id]

    def _reject(self, path: Path, error: ConfigValidationError, summary: ReloadSummary) -> None:
        summary.rejected += 1
        summary.errors.append(f"{path.name}: {error.message}")
        logger.error(f"Rejected job definition {path.name}: {error.message}")
        self._emit(
            EventType.RELOAD_REJECTED,
            {"path": path.name, "job_id": error.job_id or None, "error": error.message},
            level="ERROR",
        )

    def _finish(self, summary: ReloadSummary) -> None:
        self.passes += 1
        logger.info(
            f"Reload: added={summary.added} updated={summary.updated} "
            f"removed={summary.removed} rejected={summary.rejected}"
        )
        self._emit(EventType.RELOAD_SUMMARY, summary.to_dict())
        if self._on_summary is not None:
            self._on_summary(summary)

    def _owner_of(self, job_id: str) -> str | None:
        for name, owned in self._owners.items():
            if owned == job_id:
                return name
        return None

    def _emit(self, event_type: str, data: dict, level: str = "INFO") -> None:
        if self._bus is not None:
            self._bus.emit_nowait(Event(type=event_type, data=data, source="reconciler", level=level))

    # ── Background tasks ─────────────────────────────────────────────────────

    async def _consume(self) -> None:
        while True:
            pending = {await self._queue.get()}
            # Collect until the directory has been quiet for one debounce window.
            while True:
                try:
                    pending.add(await asyncio.wait_for(self._queue.get(), timeout=self._debounce))
                except TimeoutError:
                    break
            try:
                self.reconcile_paths(pending)
            except Exception as e:
                logger.error(f"Reconcile pass failed (non-fatal): {e}", exc_info=True)

    async def _watch(self) -> None:
        self._jobs_dir.mkdir(parents=True, exist_ok=True)
        try:
            async for changes in watchfiles.awatch(
                self._jobs_dir,
                watch_filter=lambda _change, p: is_definition_file(Path(p)),
                debounce=max(self._debounce_ms, 50),
                stop_event=self._stop_event,
                recursive=False,
            ):
                for _change, raw_path in changes:
                    self.notify(Path(raw_path))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Filesystem watch stopped: {e}", exc_info=True)
