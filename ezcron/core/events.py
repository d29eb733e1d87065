"""
ezcron Event System — types and constants.

Every lifecycle change, reload decision and run outcome produces an event.
Events flow through the EventBus to subscribers; the log sink is one of them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
import time
import uuid


class EventType:
    """
    Event type constants.

    Hierarchical naming: "category:action"
    Supports wildcard matching: "run:*" matches "run:finish"
    """

    # Daemon lifecycle
    DAEMON_START = "daemon:start"
    DAEMON_STOP = "daemon:stop"
    DAEMON_ERROR = "daemon:error"

    # Hot reload
    RELOAD_ADDED = "reload:added"
    RELOAD_UPDATED = "reload:updated"
    RELOAD_REMOVED = "reload:removed"
    RELOAD_REJECTED = "reload:rejected"
    RELOAD_SUMMARY = "reload:summary"

    # Runs
    RUN_DISPATCH = "run:dispatch"
    RUN_START = "run:start"
    RUN_FINISH = "run:finish"

    # Wildcard
    ALL = "*"


@dataclass(slots=True)
class Event:
    """
    A single event in ezcron.

    ``data`` carries the payload; run events always include ``job_id`` and
    ``run_id`` so sinks can route them to the per-run stream.
    """

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    source: str = ""
    level: str = "INFO"
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    timestamp: float = field(default_factory=time.time)

    @property
    def category(self) -> str:
        return self.type.split(":", 1)[0]
