"""Sync operator endpoints."""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request

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
from portal_sync.core.exceptions import (
    InvalidTaskError,
    ServiceNotInitializedError,
    TaskNotFoundError,
)
from portal_sync.core.logging import get_logger
from portal_sync.domain.entities import EntityType, SyncTaskStatus
from portal_sync.domain.services.sync_orchestrator import SyncOrchestrator

logger = get_logger(__name__)

router = APIRouter()


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """Orchestrator built by the application lifespan."""
    orchestrator = getattr(request.app.state, "sync_orchestrator", None)
    if orchestrator is None:
        raise ServiceNotInitializedError(
            "Workspace sync is not running (disabled or not configured)"
        )
    return orchestrator


Orchestrator = Annotated[SyncOrchestrator, Depends(get_orchestrator)]


@router.get("/stats", response_model=SyncStatsResponse)
async def get_sync_stats(orchestrator: Orchestrator) -> SyncStatsResponse:
    """Get queue and per-entity sync statistics."""
    stats = await orchestrator.get_sync_stats()
    return SyncStatsResponse(**stats)


@router.get("/failed", response_model=FailedSyncResponse)
async def list_failed(
    orchestrator: Orchestrator,
    limit: int = Query(100, ge=1, le=500),
) -> FailedSyncResponse:
    """List records whose last sync failed."""
    items = [FailedSyncItem(**item) for item in await orchestrator.list_failed(limit=limit)]
    return FailedSyncResponse(items=items, total=len(items))


@router.post("/retry-failed", response_model=RetryFailedResponse)
async def retry_failed(orchestrator: Orchestrator) -> RetryFailedResponse:
    """Reset failed records and queue them again."""
    result = await orchestrator.retry_all_failed()
    logger.info("Retry of failed syncs requested", reset=result["reset"])
    return RetryFailedResponse(reset=result["reset"], queued=result["queued"])


@router.post("/sync-pending", response_model=SyncPendingResponse)
async def sync_pending(orchestrator: Orchestrator) -> SyncPendingResponse:
    """Queue every record still waiting for sync."""
    queued = await orchestrator.sync_all_pending()
    return SyncPendingResponse(queued=queued)


@router.get("/tasks", response_model=SyncTaskListResponse)
async def list_tasks(
    orchestrator: Orchestrator,
    status: Optional[SyncTaskStatus] = Query(None, description="Filter by task status"),
    limit: int = Query(100, ge=1, le=1000),
) -> SyncTaskListResponse:
    """List recent sync tasks, newest first."""
    tasks = orchestrator.queue.list_tasks(status=status, limit=limit)
    return SyncTaskListResponse(
        tasks=[SyncTaskItem(**task.to_dict()) for task in tasks],
        total=len(tasks),
    )


@router.get("/tasks/{task_id}", response_model=SyncTaskItem)
async def get_task(task_id: str, orchestrator: Orchestrator) -> SyncTaskItem:
    """Get a single sync task."""
    task = orchestrator.queue.get_task(task_id)
    if task is None:
        raise TaskNotFoundError(f"Task not found: {task_id}", {"task_id": task_id})
    return SyncTaskItem(**task.to_dict())


@router.post("/{entity_type}/{entity_id}", response_model=EntitySyncResponse)
async def sync_entity(
    entity_type: str,
    entity_id: str,
    orchestrator: Orchestrator,
) -> EntitySyncResponse:
    """Manually resync one record from its stored state."""
    try:
        parsed = EntityType.parse(entity_type)
    except ValueError:
        raise InvalidTaskError(
            f"Invalid entity type: {entity_type}. Must be one of: {EntityType.all()}"
        )
    result = await orchestrator.sync_entity(parsed, entity_id)
    logger.info(
        "Manual entity sync requested",
        entity_type=parsed.value,
        entity_id=entity_id,
        task_id=result["task_id"],
    )
    return EntitySyncResponse(**result)
