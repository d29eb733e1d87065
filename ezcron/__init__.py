"""
ezcron — a local job scheduler with hot-reloaded job definitions.

Public API:
    from ezcron import Daemon, DaemonController, EzcronConfig
"""

__version__ = "0.1.0"

# Core
from ezcron.core.config import EzcronConfig
from ezcron.core.events import Event, EventType
from ezcron.core.errors import EzcronError

# Scheduling
from ezcron.scheduler.job import Job, JobSnapshot, RunRecord, RunStatus
from ezcron.scheduler.triggers import next_trigger

# Daemon
from ezcron.daemon.runtime import Daemon
from ezcron.daemon.controller import DaemonController

__all__ = [
    # Core
    "EzcronConfig",
    "Event",
    "EventType",
    "EzcronError",
    # Scheduling
    "Job",
    "JobSnapshot",
    "RunRecord",
    "RunStatus",
    "next_trigger",
    # Daemon
    "Daemon",
    "DaemonController",
]
