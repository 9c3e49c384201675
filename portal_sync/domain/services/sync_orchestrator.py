"""Sync orchestrator: turns entity lifecycle events into queued sync tasks."""

from typing import Any

from portal_sync.core.exceptions import (
    AppException,
    EntityNotFoundError,
    InvalidTaskError,
    InvalidTaskTransitionError,
)
from portal_sync.core.logging import get_logger
from portal_sync.domain.entities import (
    SNAPSHOT_TYPES,
    DeliverableSnapshot,
    EntitySyncStatus,
    EntityType,
    LeadSnapshot,
    MilestoneSnapshot,
    ProjectSnapshot,
    SyncOperation,
    SyncPriority,
    SyncSnapshot,
    SyncTaskStatus,
)
from portal_sync.infrastructure.database.sync_status_repository import SyncStatusRepository
from portal_sync.infrastructure.queue.sync_queue import SyncQueue
from portal_sync.infrastructure.queue.task import SyncTask

logger = get_logger(__name__)

# Parents before children so a sweep never queues a child ahead of its project
SWEEP_ORDER = (
    EntityType.PROJECT,
    EntityType.LEAD,
    EntityType.MILESTONE,
    EntityType.DELIVERABLE,
)


class SyncOrchestrator:
    """Domain-facing sync API.

    Owns the mapping from entity events to queue tasks and reconciles
    task outcomes back onto the entity's sync projection. Event hooks are
    best-effort: they log failures instead of raising them to the caller.
    """

    def __init__(
        self,
        queue: SyncQueue,
        repository: SyncStatusRepository,
        coalesce: bool = True,
        max_attempts: int | None = None,
    ):
        self._queue = queue
        self._repository = repository
        self._coalesce = coalesce
        self._max_attempts = max_attempts or queue.default_max_attempts
        # External ids of entities whose follow-up tasks have not run yet
        self._unsettled_external_ids: dict[tuple[EntityType, str], str] = {}

    @property
    def queue(self) -> SyncQueue:
        return self._queue

    @property
    def coalesce(self) -> bool:
        return self._coalesce

    async def lookup_external_id(self, entity_type: EntityType, entity_id: str) -> str | None:
        """Resolve an entity's external id, including ones not yet persisted."""
        entity_type = EntityType.parse(entity_type)
        known = self._unsettled_external_ids.get((entity_type, entity_id))
        if known:
            return known
        return await self._repository.get_external_id(entity_type, entity_id)

    # --- generic hooks ---

    async def on_entity_created(
        self, entity_type: EntityType | str, snapshot: SyncSnapshot
    ) -> str | None:
        return await self._handle_event(entity_type, snapshot, SyncOperation.CREATE)

    async def on_entity_updated(
        self,
        entity_type: EntityType | str,
        snapshot: SyncSnapshot,
        status_changed: bool = False,
    ) -> str | None:
        return await self._handle_event(
            entity_type, snapshot, SyncOperation.UPDATE, status_changed
        )

    async def on_entity_deleted(
        self, entity_type: EntityType | str, snapshot: SyncSnapshot
    ) -> str | None:
        return await self._handle_event(entity_type, snapshot, SyncOperation.DELETE)

    # --- named hooks ---

    async def on_project_created(self, snapshot: ProjectSnapshot) -> str | None:
        return await self.on_entity_created(EntityType.PROJECT, snapshot)

    async def on_project_updated(self, snapshot: ProjectSnapshot) -> str | None:
        return await self.on_entity_updated(EntityType.PROJECT, snapshot)

    async def on_project_deleted(self, snapshot: ProjectSnapshot) -> str | None:
        return await self.on_entity_deleted(EntityType.PROJECT, snapshot)

    async def on_milestone_created(self, snapshot: MilestoneSnapshot) -> str | None:
        return await self.on_entity_created(EntityType.MILESTONE, snapshot)

    async def on_milestone_updated(self, snapshot: MilestoneSnapshot) -> str | None:
        return await self.on_entity_updated(EntityType.MILESTONE, snapshot)

    async def on_milestone_status_changed(self, snapshot: MilestoneSnapshot) -> str | None:
        return await self.on_entity_updated(
            EntityType.MILESTONE, snapshot, status_changed=True
        )

    async def on_milestone_deleted(self, snapshot: MilestoneSnapshot) -> str | None:
        return await self.on_entity_deleted(EntityType.MILESTONE, snapshot)

    async def on_deliverable_created(self, snapshot: DeliverableSnapshot) -> str | None:
        return await self.on_entity_created(EntityType.DELIVERABLE, snapshot)

    async def on_deliverable_updated(self, snapshot: DeliverableSnapshot) -> str | None:
        return await self.on_entity_updated(EntityType.DELIVERABLE, snapshot)

    async def on_deliverable_deleted(self, snapshot: DeliverableSnapshot) -> str | None:
        return await self.on_entity_deleted(EntityType.DELIVERABLE, snapshot)

    async def on_lead_created(self, snapshot: LeadSnapshot) -> str | None:
        return await self.on_entity_created(EntityType.LEAD, snapshot)

    async def on_lead_updated(self, snapshot: LeadSnapshot) -> str | None:
        return await self.on_entity_updated(EntityType.LEAD, snapshot)

    async def on_lead_status_changed(self, snapshot: LeadSnapshot) -> str | None:
        return await self.on_entity_updated(EntityType.LEAD, snapshot, status_changed=True)

    async def on_lead_deleted(self, snapshot: LeadSnapshot) -> str | None:
        return await self.on_entity_deleted(EntityType.LEAD, snapshot)

    # --- event handling ---

    async def _handle_event(
        self,
        entity_type: EntityType | str,
        snapshot: SyncSnapshot,
        operation: SyncOperation,
        status_changed: bool = False,
    ) -> str | None:
        try:
            return await self._submit(
                EntityType.parse(entity_type), snapshot, operation, status_changed
            )
        except (AppException, ValueError) as e:
            logger.error(
                "Sync event not queued",
                entity_type=str(entity_type),
                entity_id=getattr(snapshot, "id", None),
                operation=operation.value,
                error=str(e),
            )
            return None

    async def _mark(
        self,
        entity_type: EntityType,
        entity_id: str,
        status: EntitySyncStatus,
        external_id: str | None = None,
        error: str | None = None,
    ) -> bool:
        """Write the projection; a database failure is logged, never raised."""
        try:
            found = await self._repository.update_sync_status(
                entity_type, entity_id, status, external_id=external_id, error=error
            )
        except AppException as e:
            logger.error(
                "Failed to write sync status",
                entity_type=entity_type.value,
                entity_id=entity_id,
                status=status.value,
                error=e.message,
            )
            return False
        if not found:
            logger.info(
                "Entity no longer exists, sync status not recorded",
                entity_type=entity_type.value,
                entity_id=entity_id,
                status=status.value,
            )
        return found

    async def _submit(
        self,
        entity_type: EntityType,
        snapshot: SyncSnapshot,
        operation: SyncOperation,
        status_changed: bool = False,
    ) -> str | None:
        expected = SNAPSHOT_TYPES[entity_type]
        if not isinstance(snapshot, expected):
            raise InvalidTaskError(
                f"Expected {expected.__name__} for {entity_type.value}, "
                f"got {type(snapshot).__name__}"
            )
        if operation == SyncOperation.DELETE:
            return await self._submit_delete(entity_type, snapshot)

        if entity_type.has_parent_project and not snapshot.parent_external_id:
            parent_id = await self.lookup_external_id(EntityType.PROJECT, snapshot.project_id)
            if not parent_id:
                await self._mark(entity_type, snapshot.id, EntitySyncStatus.PENDING)
                logger.info(
                    "Parent project not synced yet, deferring",
                    entity_type=entity_type.value,
                    entity_id=snapshot.id,
                    project_id=snapshot.project_id,
                )
                return None
            snapshot = snapshot.model_copy(update={"parent_external_id": parent_id})

        priority = SyncPriority.for_operation(operation, status_changed)
        payload = snapshot.to_payload()
        await self._mark(entity_type, snapshot.id, EntitySyncStatus.SYNCING)

        # No awaits from here until the task is queued or coalesced:
        # a worker may claim any PENDING task at the next suspension point
        active = self._queue.find_active(entity_type, snapshot.id)
        pending_delete = next(
            (
                t
                for t in active
                if t.status == SyncTaskStatus.PENDING and t.operation == SyncOperation.DELETE
            ),
            None,
        )
        if pending_delete is not None:
            logger.info(
                "Delete pending, ignoring event",
                entity_type=entity_type.value,
                entity_id=snapshot.id,
                operation=operation.value,
            )
            return pending_delete.task_id

        task_id = None
        if self._coalesce:
            pending = next(
                (
                    t
                    for t in active
                    if t.status == SyncTaskStatus.PENDING
                    and t.operation != SyncOperation.DELETE
                ),
                None,
            )
            if pending is not None:
                merged_op = (
                    SyncOperation.CREATE
                    if SyncOperation.CREATE in (pending.operation, operation)
                    else SyncOperation.UPDATE
                )
                if self._try_replace(
                    pending.task_id,
                    payload,
                    operation=merged_op,
                    priority=min(pending.priority, int(priority)),
                ):
                    task_id = pending.task_id

        if task_id is None:
            task_id = self._enqueue(entity_type, snapshot.id, operation, priority, payload)
        return task_id

    def _try_replace(
        self,
        task_id: str,
        payload: dict[str, Any],
        operation: SyncOperation | None = None,
        priority: int | None = None,
    ) -> bool:
        """Coalesce into a PENDING task; False if a worker already claimed it."""
        try:
            self._queue.replace_payload(task_id, payload, operation=operation, priority=priority)
        except InvalidTaskTransitionError:
            logger.debug("Task started before it could be coalesced", task_id=task_id)
            return False
        return True

    async def _submit_delete(self, entity_type: EntityType, snapshot: SyncSnapshot) -> str | None:
        external_id = snapshot.external_id or await self.lookup_external_id(
            entity_type, snapshot.id
        )
        if external_id and not snapshot.external_id:
            snapshot = snapshot.model_copy(update={"external_id": external_id})
        payload = snapshot.to_payload()

        active = self._queue.find_active(entity_type, snapshot.id)
        for task in active:
            if (
                task.status == SyncTaskStatus.PENDING
                and task.operation == SyncOperation.DELETE
                and self._try_replace(task.task_id, payload)
            ):
                return task.task_id

        in_flight = any(t.status == SyncTaskStatus.PROCESSING for t in active)
        for task in active:
            if task.status != SyncTaskStatus.PENDING or task.operation == SyncOperation.DELETE:
                continue
            try:
                await self._queue.cancel(task.task_id, "Superseded by delete")
            except InvalidTaskTransitionError:
                # Claimed by a worker while earlier cancellations ran
                in_flight = True

        if not external_id and not in_flight:
            logger.info(
                "Entity was never synced, nothing to archive",
                entity_type=entity_type.value,
                entity_id=snapshot.id,
            )
            return None

        await self._mark(entity_type, snapshot.id, EntitySyncStatus.SYNCING)
        return self._enqueue(
            entity_type, snapshot.id, SyncOperation.DELETE, SyncPriority.DELETE, payload
        )

    def _enqueue(
        self,
        entity_type: EntityType,
        entity_id: str,
        operation: SyncOperation,
        priority: int,
        payload: dict[str, Any],
    ) -> str:
        task = SyncTask(
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            priority=int(priority),
            payload=payload,
            max_attempts=self._max_attempts,
        )
        return self._queue.enqueue(task, on_complete=self._on_task_finished)

    # --- completion ---

    async def _on_task_finished(self, task: SyncTask) -> None:
        key = (task.entity_type, task.entity_id)

        if task.status == SyncTaskStatus.CANCELLED:
            return

        if task.status == SyncTaskStatus.FAILED:
            self._unsettled_external_ids.pop(key, None)
            await self._mark(
                task.entity_type,
                task.entity_id,
                EntitySyncStatus.FAILED,
                error=task.last_error,
            )
            return

        remaining = self._queue.find_active(task.entity_type, task.entity_id)
        if remaining:
            # Later tasks for the entity still decide the final status
            if task.external_id:
                self._unsettled_external_ids[key] = task.external_id
            await self._mark(
                task.entity_type,
                task.entity_id,
                EntitySyncStatus.SYNCING,
                external_id=task.external_id,
            )
        else:
            self._unsettled_external_ids.pop(key, None)
            await self._mark(
                task.entity_type,
                task.entity_id,
                EntitySyncStatus.SYNCED,
                external_id=task.external_id,
            )

        if (
            task.entity_type == EntityType.PROJECT
            and task.operation != SyncOperation.DELETE
            and task.external_id
        ):
            await self._sync_children(task.entity_id, task.external_id)

    async def _sync_children(self, project_id: str, project_external_id: str) -> int:
        """Queue children that were deferred waiting for their project page."""
        queued = 0
        for entity_type in (EntityType.MILESTONE, EntityType.DELIVERABLE):
            try:
                snapshots = await self._repository.list_pending_snapshots(
                    entity_type, project_id=project_id
                )
            except AppException as e:
                logger.error(
                    "Failed to load deferred children",
                    project_id=project_id,
                    entity_type=entity_type.value,
                    error=e.message,
                )
                continue
            for snapshot in snapshots:
                if self._queue.find_active(entity_type, snapshot.id):
                    continue
                snapshot = snapshot.model_copy(
                    update={"parent_external_id": project_external_id}
                )
                if await self._handle_event(entity_type, snapshot, self._operation_for(snapshot)):
                    queued += 1
        if queued:
            logger.info("Queued deferred children", project_id=project_id, count=queued)
        return queued

    @staticmethod
    def _operation_for(snapshot: SyncSnapshot) -> SyncOperation:
        return SyncOperation.UPDATE if snapshot.external_id else SyncOperation.CREATE

    # --- operator actions ---

    async def sync_all_pending(self) -> dict[str, int]:
        """Queue every PENDING/SYNCING record that has no active task.

        Returns:
            Number of tasks queued per entity type
        """
        counts: dict[str, int] = {}
        for entity_type in SWEEP_ORDER:
            queued = 0
            try:
                snapshots = await self._repository.list_pending_snapshots(entity_type)
            except AppException as e:
                logger.error(
                    "Pending sweep failed to load records",
                    entity_type=entity_type.value,
                    error=e.message,
                )
                counts[entity_type.value.lower()] = 0
                continue

            for snapshot in snapshots:
                if self._queue.find_active(entity_type, snapshot.id):
                    continue
                if entity_type.has_parent_project and not snapshot.parent_external_id:
                    continue
                if await self._handle_event(entity_type, snapshot, self._operation_for(snapshot)):
                    queued += 1
            counts[entity_type.value.lower()] = queued

        logger.info("Pending sweep finished", **counts)
        return counts

    async def retry_all_failed(self) -> dict[str, Any]:
        """Reset FAILED records to PENDING and queue them."""
        reset = await self._repository.reset_failed()
        queued = await self.sync_all_pending()
        logger.info("Retrying failed syncs", reset=reset, queued=sum(queued.values()))
        return {"reset": reset, "queued": queued}

    async def sync_entity(self, entity_type: EntityType | str, entity_id: str) -> dict[str, Any]:
        """Manually resync one record from its stored state.

        Raises:
            EntityNotFoundError: If the record does not exist
        """
        entity_type = EntityType.parse(entity_type)
        snapshot = await self._repository.get_snapshot(entity_type, entity_id)
        if snapshot is None:
            raise EntityNotFoundError(
                f"{entity_type.value.title()} not found: {entity_id}",
                {"entity_type": entity_type.value, "entity_id": entity_id},
            )
        operation = self._operation_for(snapshot)
        task_id = await self._submit(entity_type, snapshot, operation)
        return {
            "entity_type": entity_type.value,
            "entity_id": entity_id,
            "operation": operation.value,
            "task_id": task_id,
            "status": "queued" if task_id else "deferred",
        }

    async def get_sync_stats(self) -> dict[str, Any]:
        entities = await self._repository.count_by_status()
        summary = {status.value.lower(): 0 for status in EntitySyncStatus}
        for per_status in entities.values():
            for status, count in per_status.items():
                summary[status] = summary.get(status, 0) + count
        summary["total"] = sum(
            count for status, count in summary.items() if status != "total"
        )
        return {
            "queue": self._queue.get_status(),
            "entities": entities,
            "summary": summary,
        }

    async def list_failed(self, limit: int = 100) -> list[dict[str, Any]]:
        return await self._repository.list_failed(limit=limit)
