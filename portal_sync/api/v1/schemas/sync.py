"""Pydantic schemas for sync endpoints."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class SyncTaskItem(BaseModel):
    """A queued, running or finished sync task."""

    task_id: str
    entity_type: str
    entity_id: str
    operation: str = Field(..., description="CREATE, UPDATE or DELETE")
    priority: int = Field(..., description="Lower is served first")
    status: str = Field(..., description="PENDING, PROCESSING, COMPLETED, FAILED, CANCELLED")
    attempts: int
    max_attempts: int
    last_error: Optional[str] = None
    external_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


class SyncTaskListResponse(BaseModel):
    """Response for task listing."""

    tasks: list[SyncTaskItem]
    total: int


class SyncStatsResponse(BaseModel):
    """Queue and database sync statistics."""

    queue: dict[str, Any] = Field(..., description="Dispatcher status and task counts")
    entities: dict[str, dict[str, int]] = Field(
        ..., description="Per entity type counts by sync status"
    )
    summary: dict[str, int]


class FailedSyncItem(BaseModel):
    """A record whose last sync failed."""

    entity_type: str
    entity_id: str
    name: Optional[str] = None
    sync_error: Optional[str] = None
    last_synced_at: Optional[datetime] = None


class FailedSyncResponse(BaseModel):
    """Response for failed records listing."""

    items: list[FailedSyncItem]
    total: int


class SyncPendingResponse(BaseModel):
    """Result of a pending sweep."""

    status: str = "queued"
    queued: dict[str, int] = Field(..., description="Tasks queued per entity type")


class RetryFailedResponse(BaseModel):
    """Result of retrying failed records."""

    status: str = "queued"
    reset: int = Field(..., description="Records moved from FAILED to PENDING")
    queued: dict[str, int]


class EntitySyncResponse(BaseModel):
    """Result of a manual entity sync."""

    entity_type: str
    entity_id: str
    operation: str
    task_id: Optional[str] = Field(None, description="Queue task ID, empty when deferred")
    status: str = Field(..., description="queued or deferred")
