"""Assembly of the sync subsystem: workspace client, queue and orchestrator."""

from dataclasses import dataclass

from portal_sync.config import Settings
from portal_sync.core.logging import get_logger
from portal_sync.domain.entities import EntityType
from portal_sync.domain.services.sync_orchestrator import SyncOrchestrator
from portal_sync.infrastructure.database.sync_status_repository import SyncStatusRepository
from portal_sync.infrastructure.queue import RateLimiter, SyncQueue, build_executors
from portal_sync.infrastructure.workspace.client import WorkspaceClient

logger = get_logger(__name__)


@dataclass
class SyncRuntime:
    """Running sync components owned by the application lifespan."""

    client: WorkspaceClient
    queue: SyncQueue
    orchestrator: SyncOrchestrator

    async def start(self) -> None:
        await self.queue.start()

    async def stop(self, timeout: float | None = None) -> None:
        """Drain the queue, then release the HTTP client."""
        try:
            await self.queue.stop(drain=True, timeout=timeout)
        finally:
            await self.client.aclose()


def build_sync_runtime(
    settings: Settings,
    repository: SyncStatusRepository,
    client: WorkspaceClient | None = None,
) -> SyncRuntime:
    """Wire executors, queue and orchestrator from settings.

    The dispatcher and the workspace client share one rate limiter, so
    retries and fallbacks inside a task count against the same budget.
    """
    rate_limiter = RateLimiter(
        max_requests_per_window=settings.sync_rate_limit_requests,
        window_duration_ms=settings.sync_rate_limit_window_ms,
    )
    client = client or WorkspaceClient(settings=settings, rate_limiter=rate_limiter)

    async def lookup(entity_type: EntityType, entity_id: str) -> str | None:
        return await orchestrator.lookup_external_id(entity_type, entity_id)

    executors = build_executors(client, settings, external_id_lookup=lookup)
    queue = SyncQueue.from_settings(settings, executors, rate_limiter=rate_limiter)
    orchestrator = SyncOrchestrator(
        queue,
        repository,
        coalesce=settings.sync_coalesce_enabled,
        max_attempts=settings.sync_max_attempts,
    )
    logger.info(
        "Sync runtime built",
        workers=settings.effective_worker_count,
        rate_limit=f"{settings.sync_rate_limit_requests}/{settings.sync_rate_limit_window_ms}ms",
        coalesce=settings.sync_coalesce_enabled,
    )
    return SyncRuntime(client=client, queue=queue, orchestrator=orchestrator)
