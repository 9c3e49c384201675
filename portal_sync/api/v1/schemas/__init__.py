"""API v1 Pydantic schemas."""

from portal_sync.api.v1.schemas.common import (
    ErrorResponse,
    HealthResponse,
    SchedulerHealth,
    SyncHealth,
)
from portal_sync.api.v1.schemas.sync import (
    EntitySyncResponse,
    FailedSyncItem,
    FailedSyncResponse,
    RetryFailedResponse,
    SyncPendingResponse,
    SyncStatsResponse,
    SyncTaskItem,
    SyncTaskListResponse,
)

__all__ = [
    # Common
    "ErrorResponse",
    "HealthResponse",
    "SchedulerHealth",
    "SyncHealth",
    # Sync
    "EntitySyncResponse",
    "FailedSyncItem",
    "FailedSyncResponse",
    "RetryFailedResponse",
    "SyncPendingResponse",
    "SyncStatsResponse",
    "SyncTaskItem",
    "SyncTaskListResponse",
]
