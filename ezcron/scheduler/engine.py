"""
Scheduler — the background asyncio task that fires due jobs.

Design:
- Ticks every ``tick_interval`` seconds (1 s by default)
- Each tick: snapshot ``now``, ask the registry which enabled jobs are due,
  hand each one to the Executor as a fire-and-forget task, and advance its
  cached trigger, all without awaiting in between. A job removed before
  the tick is therefore never dispatched by it.
- Overlap is allowed: a slow run does not stop the next trigger of the same
  job from dispatching.
- No missed-run replay: the next trigger is computed from the tick's ``now``,
  so triggers missed while paused are skipped
- Stopping ends dispatching only; in-flight runs finish or time out on
  their own
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable

from ezcron.core.bus import EventBus
from ezcron.core.events import Event, EventType
from ezcron.scheduler.executor import Executor
from ezcron.scheduler.registry import JobRegistry

logger = logging.getLogger(__name__)

TICK_INTERVAL = 1.0  # seconds between due-job checks

Clock = Callable[[], datetime]


def local_now() -> datetime:
    return datetime.now().astimezone()


class Scheduler:
    """
    Background tick loop over a JobRegistry.

    Usage:
        scheduler = Scheduler(registry, executor, bus=bus)
        await scheduler.start()
        ...
        await scheduler.stop()     # future dispatches stop; runs continue
        await executor.drain()     # optionally wait for them
    """

    def __init__(
        self,
        registry: JobRegistry,
        executor: Executor,
        bus: EventBus | None = None,
        tick_interval: float = TICK_INTERVAL,
        clock: Clock = local_now,
        on_tick: Callable[[], None] | None = None,
    ) -> None:
        self._registry = registry
        self._executor = executor
        self._bus = bus
        self._tick_interval = tick_interval
        self._clock = clock
        self._on_tick = on_tick
        self._task: asyncio.Task | None = None
        self._running = False
        self.dispatch_count = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="scheduler")
        logger.info("Scheduler started")

    async def stop(self) -> None:
        """Stop dispatching. Does not touch in-flight executions."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Scheduler stopped")

    # ── Internal loop ─────────────────────────────────────────────────────────

    async def _loop(self) -> None:
        while self._running:
            try:
                self.tick()
                if self._on_tick is not None:
                    self._on_tick()
            except Exception as e:
                logger.warning(f"Scheduler tick error (non-fatal): {e}", exc_info=True)
            await asyncio.sleep(self._tick_interval)

    def tick(self, now: datetime | None = None) -> list[str]:
        """
        Dispatch every due job once and roll disabled jobs forward.
        Synchronous on purpose: the registry cannot change between reading
        ``due`` and dispatching.

        Returns the dispatched job ids.
        """
        now = now or self._clock()
        dispatched: list[str] = []
        for job_id in self._registry.due(now):
            entry = self._registry.entry(job_id)
            if entry is None or entry.next_run is None:
                continue
            self._executor.spawn(entry.job, trigger_time=entry.next_run, trigger="schedule")
            nxt = self._registry.advance(job_id, now)
            self.dispatch_count += 1
            dispatched.append(job_id)
            logger.info(f"Dispatched {job_id!r} (trigger={entry.next_run}); next={nxt}")
            if self._bus is not None:
                self._bus.emit_nowait(Event(
                    type=EventType.RUN_DISPATCH,
                    source="scheduler",
                    data={
                        "job_id": job_id,
                        "trigger_time": entry.next_run.isoformat(),
                        "next_run": nxt.isoformat() if nxt else None,
                    },
                ))

        # Disabled jobs keep a current next trigger for status output.
        for job_id in self._registry.lapsed(now):
            self._registry.advance(job_id, now)
        return dispatched
