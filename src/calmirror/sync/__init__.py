"""Sync orchestration and scheduling."""

from calmirror.sync.orchestrator import SyncOrchestrator, SyncState
from calmirror.sync.scheduler import SyncConstraints, SyncScheduler, backoff_delay_seconds

__all__ = [
    "SyncConstraints",
    "SyncOrchestrator",
    "SyncScheduler",
    "SyncState",
    "backoff_delay_seconds",
]
