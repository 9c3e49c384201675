"""Read/write access to the sync projection columns of synced records."""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from portal_sync.core.exceptions import DatabaseError
from portal_sync.core.logging import get_logger
from portal_sync.domain.entities import (
    DeliverableSnapshot,
    EntitySyncStatus,
    EntityType,
    LeadSnapshot,
    MilestoneSnapshot,
    MilestoneSummary,
    ProjectSnapshot,
    SyncSnapshot,
)
from portal_sync.infrastructure.database.models import (
    Deliverable,
    Lead,
    Milestone,
    Project,
)

logger = get_logger(__name__)

MODELS: dict[EntityType, type] = {
    EntityType.PROJECT: Project,
    EntityType.MILESTONE: Milestone,
    EntityType.DELIVERABLE: Deliverable,
    EntityType.LEAD: Lead,
}

UNSETTLED = (EntitySyncStatus.PENDING.value, EntitySyncStatus.SYNCING.value)


class SyncStatusRepository(ABC):
    """Narrow contract over the relational store used by the orchestrator."""

    @abstractmethod
    async def update_sync_status(
        self,
        entity_type: EntityType,
        entity_id: str,
        status: EntitySyncStatus,
        external_id: str | None = None,
        error: str | None = None,
    ) -> bool:
        """Write the projection. Returns False when the row no longer exists."""

    @abstractmethod
    async def get_external_id(self, entity_type: EntityType, entity_id: str) -> str | None: ...

    @abstractmethod
    async def get_snapshot(
        self, entity_type: EntityType, entity_id: str
    ) -> SyncSnapshot | None: ...

    @abstractmethod
    async def list_pending_snapshots(
        self, entity_type: EntityType, project_id: str | None = None
    ) -> list[SyncSnapshot]:
        """Snapshots of records whose projection is PENDING or SYNCING."""

    @abstractmethod
    async def reset_failed(self, entity_type: EntityType | None = None) -> int: ...

    @abstractmethod
    async def count_by_status(self) -> dict[str, dict[str, int]]: ...

    @abstractmethod
    async def list_failed(self, limit: int = 100) -> list[dict[str, Any]]: ...


def project_snapshot(project: Project) -> ProjectSnapshot:
    return ProjectSnapshot(
        id=project.id,
        external_id=project.external_id,
        name=project.name,
        tier=project.tier,
        status=project.status,
        payment_status=project.payment_status,
        project_address=project.project_address,
        client_name=project.client_name,
        client_email=project.client_email,
        created_at=project.created_at,
        milestones=tuple(
            MilestoneSummary(
                name=m.name, status=m.status, order=m.sort_order, due_date=m.due_date
            )
            for m in project.milestones
        ),
    )


def milestone_snapshot(milestone: Milestone, parent_external_id: str | None) -> MilestoneSnapshot:
    return MilestoneSnapshot(
        id=milestone.id,
        external_id=milestone.external_id,
        project_id=milestone.project_id,
        parent_external_id=parent_external_id,
        name=milestone.name,
        order=milestone.sort_order,
        status=milestone.status,
        due_date=milestone.due_date,
        completed_at=milestone.completed_at,
    )


def deliverable_snapshot(
    deliverable: Deliverable,
    parent_external_id: str | None,
    project_name: str | None,
) -> DeliverableSnapshot:
    return DeliverableSnapshot(
        id=deliverable.id,
        external_id=deliverable.external_id,
        project_id=deliverable.project_id,
        parent_external_id=parent_external_id,
        project_name=project_name,
        name=deliverable.name,
        category=deliverable.category,
        file_url=deliverable.file_url,
        file_type=deliverable.file_type,
        file_size=deliverable.file_size,
        description=deliverable.description,
        created_at=deliverable.created_at,
    )


def lead_snapshot(lead: Lead) -> LeadSnapshot:
    return LeadSnapshot(
        id=lead.id,
        external_id=lead.external_id,
        email=lead.email,
        name=lead.name,
        project_address=lead.project_address,
        budget_range=lead.budget_range,
        timeline=lead.timeline,
        project_type=lead.project_type,
        has_survey=lead.has_survey,
        has_drawings=lead.has_drawings,
        recommended_tier=lead.recommended_tier,
        routing_reason=lead.routing_reason,
        status=lead.status,
        created_at=lead.created_at,
    )


class SqlSyncStatusRepository(SyncStatusRepository):
    """SQLAlchemy implementation; each call runs in its own session."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def update_sync_status(
        self,
        entity_type: EntityType,
        entity_id: str,
        status: EntitySyncStatus,
        external_id: str | None = None,
        error: str | None = None,
    ) -> bool:
        model = MODELS[EntityType.parse(entity_type)]
        values: dict[str, Any] = {"sync_status": EntitySyncStatus(status).value}
        if external_id is not None:
            values["external_id"] = external_id
        if status == EntitySyncStatus.SYNCED:
            values["last_synced_at"] = datetime.now(timezone.utc).replace(tzinfo=None)
            values["sync_error"] = None
        elif status == EntitySyncStatus.FAILED:
            values["sync_error"] = error

        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(model).where(model.id == entity_id).values(**values)
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to update sync status",
                entity_type=model.__tablename__,
                entity_id=entity_id,
                error=str(e),
            )
            raise DatabaseError(f"Failed to update sync status: {e}") from e
        return result.rowcount > 0

    async def get_external_id(self, entity_type: EntityType, entity_id: str) -> str | None:
        model = MODELS[EntityType.parse(entity_type)]
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(model.external_id).where(model.id == entity_id)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to read external id: {e}") from e

    async def get_snapshot(
        self, entity_type: EntityType, entity_id: str
    ) -> SyncSnapshot | None:
        snapshots = await self._load(EntityType.parse(entity_type), ids=[entity_id])
        return snapshots[0] if snapshots else None

    async def list_pending_snapshots(
        self, entity_type: EntityType, project_id: str | None = None
    ) -> list[SyncSnapshot]:
        return await self._load(
            EntityType.parse(entity_type), statuses=UNSETTLED, project_id=project_id
        )

    async def _load(
        self,
        entity_type: EntityType,
        ids: Iterable[str] | None = None,
        statuses: Iterable[str] | None = None,
        project_id: str | None = None,
    ) -> list[SyncSnapshot]:
        model = MODELS[entity_type]
        if entity_type in (EntityType.MILESTONE, EntityType.DELIVERABLE):
            stmt = select(model, Project.external_id, Project.name).join(
                Project, Project.id == model.project_id
            )
        else:
            stmt = select(model)
        if entity_type == EntityType.PROJECT:
            stmt = stmt.options(selectinload(Project.milestones))
        if ids is not None:
            stmt = stmt.where(model.id.in_(list(ids)))
        if statuses is not None:
            stmt = stmt.where(model.sync_status.in_(list(statuses)))
        if project_id is not None and entity_type.has_parent_project:
            stmt = stmt.where(model.project_id == project_id)
        stmt = stmt.order_by(model.created_at)

        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                if entity_type == EntityType.PROJECT:
                    return [project_snapshot(row) for row in result.scalars().all()]
                if entity_type == EntityType.LEAD:
                    return [lead_snapshot(row) for row in result.scalars().all()]
                if entity_type == EntityType.MILESTONE:
                    return [milestone_snapshot(row, parent) for row, parent, _ in result.all()]
                return [
                    deliverable_snapshot(row, parent, name) for row, parent, name in result.all()
                ]
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to load {entity_type.value.lower()} snapshots: {e}") from e

    async def reset_failed(self, entity_type: EntityType | None = None) -> int:
        """Move FAILED records back to PENDING, clearing the error."""
        types = [EntityType.parse(entity_type)] if entity_type else list(EntityType)
        total = 0
        try:
            async with self._session_factory() as session:
                for et in types:
                    model = MODELS[et]
                    result = await session.execute(
                        update(model)
                        .where(model.sync_status == EntitySyncStatus.FAILED.value)
                        .values(sync_status=EntitySyncStatus.PENDING.value, sync_error=None)
                    )
                    total += result.rowcount
                await session.commit()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to reset failed records: {e}") from e
        logger.info("Reset failed sync records", count=total)
        return total

    async def count_by_status(self) -> dict[str, dict[str, int]]:
        counts: dict[str, dict[str, int]] = {}
        try:
            async with self._session_factory() as session:
                for entity_type, model in MODELS.items():
                    per_status = {status.value.lower(): 0 for status in EntitySyncStatus}
                    result = await session.execute(
                        select(model.sync_status, func.count()).group_by(model.sync_status)
                    )
                    for status, count in result.all():
                        per_status[str(status).lower()] = count
                    counts[entity_type.value] = per_status
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to count sync statuses: {e}") from e
        return counts

    async def list_failed(self, limit: int = 100) -> list[dict[str, Any]]:
        failed: list[dict[str, Any]] = []
        try:
            async with self._session_factory() as session:
                for entity_type, model in MODELS.items():
                    label = model.email if model is Lead else model.name
                    result = await session.execute(
                        select(model.id, label, model.sync_error, model.last_synced_at)
                        .where(model.sync_status == EntitySyncStatus.FAILED.value)
                        .limit(limit)
                    )
                    for entity_id, name, error, last_synced_at in result.all():
                        failed.append(
                            {
                                "entity_type": entity_type.value,
                                "entity_id": entity_id,
                                "name": name,
                                "sync_error": error,
                                "last_synced_at": last_synced_at,
                            }
                        )
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to list failed records: {e}") from e
        return failed[:limit]
