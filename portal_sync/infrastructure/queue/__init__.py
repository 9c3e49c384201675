"""Sync queue module: task store, rate limiter, executors and dispatcher."""

from portal_sync.infrastructure.queue.executors import (
    DeliverableExecutor,
    LeadExecutor,
    MilestoneExecutor,
    ProjectExecutor,
    SyncExecutor,
    build_executors,
)
from portal_sync.infrastructure.queue.rate_limiter import RateLimiter
from portal_sync.infrastructure.queue.sync_queue import SyncQueue
from portal_sync.infrastructure.queue.task import SyncTask
from portal_sync.infrastructure.queue.task_store import (
    InMemorySyncTaskStore,
    SyncTaskStore,
)

__all__ = [
    "DeliverableExecutor",
    "InMemorySyncTaskStore",
    "LeadExecutor",
    "MilestoneExecutor",
    "ProjectExecutor",
    "RateLimiter",
    "SyncExecutor",
    "SyncQueue",
    "SyncTask",
    "SyncTaskStore",
    "build_executors",
]
