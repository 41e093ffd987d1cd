"""Sync module - day cache, refresh orchestration and scheduling."""

from .coordinator import DayCacheCoordinator, RefreshStats, contiguous_batches
from .day_cache import DayCacheStore, SQLiteDayCache
from .orchestrator import RefreshOrchestrator
from .scheduler import RefreshInterval, RefreshScheduler, RefreshTimeoutError
from .session import ActivitySession, SessionSnapshot

__all__ = [
    "ActivitySession",
    "DayCacheCoordinator",
    "DayCacheStore",
    "RefreshInterval",
    "RefreshOrchestrator",
    "RefreshScheduler",
    "RefreshStats",
    "RefreshTimeoutError",
    "SQLiteDayCache",
    "SessionSnapshot",
    "contiguous_batches",
]
