"""Per-entity executors performing the external call for a sync task."""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, ClassVar

from pydantic import ValidationError

from portal_sync.config import Settings
from portal_sync.core.exceptions import TerminalSyncError, WorkspaceNotFoundError
from portal_sync.core.logging import get_logger
from portal_sync.domain.entities import (
    DeliverableSnapshot,
    EntityType,
    LeadSnapshot,
    MilestoneSnapshot,
    ProjectSnapshot,
    SyncOperation,
    SyncSnapshot,
)
from portal_sync.domain.services.page_builder import PageBuilder
from portal_sync.infrastructure.queue.task import SyncTask
from portal_sync.infrastructure.workspace.client import WorkspaceClient

logger = get_logger(__name__)

ExternalIdLookup = Callable[[EntityType, str], Awaitable[str | None]]


async def _no_lookup(entity_type: EntityType, entity_id: str) -> str | None:
    return None


class SyncExecutor(ABC):
    """Performs one task's external call and returns the external id.

    Upsert semantics: a create for an entity that already has an external
    id becomes an update, and an update whose target is gone recreates it.
    Deletes archive the resource; a missing id or resource is a no-op.
    """

    entity_type: ClassVar[EntityType]
    snapshot_type: ClassVar[type[SyncSnapshot]]

    def __init__(
        self,
        client: WorkspaceClient,
        external_id_lookup: ExternalIdLookup | None = None,
    ):
        self._client = client
        self._lookup = external_id_lookup or _no_lookup

    def parse(self, task: SyncTask) -> SyncSnapshot:
        try:
            return self.snapshot_type.from_payload(task.payload)
        except ValidationError as e:
            raise TerminalSyncError(
                f"Invalid {task.entity_type.value.lower()} payload: {e.error_count()} error(s)",
                {"task_id": task.task_id, "errors": e.errors(include_url=False)},
            ) from e

    async def execute(self, task: SyncTask) -> str | None:
        snapshot = self.parse(task)
        external_id = snapshot.external_id or await self._lookup(
            task.entity_type, task.entity_id
        )

        if task.operation == SyncOperation.DELETE:
            if not external_id:
                logger.info(
                    "Nothing to archive, entity was never synced",
                    entity_type=task.entity_type.value,
                    entity_id=task.entity_id,
                )
                return None
            try:
                await self.archive(snapshot, external_id)
            except WorkspaceNotFoundError:
                logger.info(
                    "External resource already gone",
                    entity_type=task.entity_type.value,
                    external_id=external_id,
                )
            return external_id

        if external_id:
            try:
                await self.update(snapshot, external_id)
                return external_id
            except WorkspaceNotFoundError:
                logger.warning(
                    "External resource missing, recreating",
                    entity_type=task.entity_type.value,
                    entity_id=task.entity_id,
                    external_id=external_id,
                )

        return await self.create(snapshot)

    async def _require_parent(self, snapshot: MilestoneSnapshot | DeliverableSnapshot) -> str:
        parent_id = snapshot.parent_external_id or await self._lookup(
            EntityType.PROJECT, snapshot.project_id
        )
        if not parent_id:
            raise TerminalSyncError(
                f"Parent project {snapshot.project_id} has no workspace page",
                {"entity_id": snapshot.id, "project_id": snapshot.project_id},
            )
        return parent_id

    @abstractmethod
    async def create(self, snapshot: SyncSnapshot) -> str: ...

    @abstractmethod
    async def update(self, snapshot: SyncSnapshot, external_id: str) -> None: ...

    async def archive(self, snapshot: SyncSnapshot, external_id: str) -> None:
        await self._client.archive_page(external_id)


class DatabasePageExecutor(SyncExecutor):
    """Executor for entities rendered as pages in a workspace database."""

    def __init__(
        self,
        client: WorkspaceClient,
        database_id: str,
        external_id_lookup: ExternalIdLookup | None = None,
    ):
        super().__init__(client, external_id_lookup)
        self._database_id = database_id

    def _parent(self) -> dict[str, str]:
        if not self._database_id:
            raise TerminalSyncError(
                f"Workspace database for {self.entity_type.value.lower()}s is not configured"
            )
        return {"database_id": self._database_id}


class ProjectExecutor(DatabasePageExecutor):
    entity_type = EntityType.PROJECT
    snapshot_type = ProjectSnapshot

    async def create(self, snapshot: ProjectSnapshot) -> str:
        page = await self._client.create_page(
            self._parent(),
            PageBuilder.project_properties(snapshot),
            PageBuilder.project_blocks(snapshot),
        )
        return page["id"]

    async def update(self, snapshot: ProjectSnapshot, external_id: str) -> None:
        await self._client.update_page(
            external_id, PageBuilder.project_properties(snapshot, full=False)
        )


class LeadExecutor(DatabasePageExecutor):
    entity_type = EntityType.LEAD
    snapshot_type = LeadSnapshot

    async def create(self, snapshot: LeadSnapshot) -> str:
        page = await self._client.create_page(
            self._parent(),
            PageBuilder.lead_properties(snapshot),
            PageBuilder.lead_blocks(snapshot),
        )
        return page["id"]

    async def update(self, snapshot: LeadSnapshot, external_id: str) -> None:
        await self._client.update_page(
            external_id, PageBuilder.lead_properties(snapshot, full=False)
        )


class DeliverableExecutor(DatabasePageExecutor):
    """Deliverable pages go to the deliverables database when configured,
    otherwise they are created as child pages of the project page."""

    entity_type = EntityType.DELIVERABLE
    snapshot_type = DeliverableSnapshot

    async def create(self, snapshot: DeliverableSnapshot) -> str:
        parent_id = await self._require_parent(snapshot)
        snapshot = snapshot.model_copy(update={"parent_external_id": parent_id})
        properties = PageBuilder.deliverable_properties(snapshot)
        if self._database_id:
            parent = {"database_id": self._database_id}
        else:
            parent = {"page_id": parent_id}
            # Child pages only accept a title property
            properties = {"title": properties["Name"]}
        page = await self._client.create_page(
            parent, properties, PageBuilder.deliverable_blocks(snapshot)
        )
        return page["id"]

    async def update(self, snapshot: DeliverableSnapshot, external_id: str) -> None:
        properties = PageBuilder.deliverable_properties(snapshot)
        if not self._database_id:
            properties = {"title": properties["Name"]}
        await self._client.update_page(external_id, properties)


class MilestoneExecutor(SyncExecutor):
    """Milestones are to-do blocks inside the parent project page."""

    entity_type = EntityType.MILESTONE
    snapshot_type = MilestoneSnapshot

    async def create(self, snapshot: MilestoneSnapshot) -> str:
        parent_id = await self._require_parent(snapshot)
        response = await self._client.append_block(
            parent_id, [PageBuilder.milestone_block(snapshot)]
        )
        results = response.get("results") or []
        if not results:
            raise TerminalSyncError(
                "Workspace returned no block for appended milestone",
                {"entity_id": snapshot.id, "parent_id": parent_id},
            )
        return results[0]["id"]

    async def update(self, snapshot: MilestoneSnapshot, external_id: str) -> None:
        await self._client.update_block(
            external_id, PageBuilder.milestone_block_update(snapshot)
        )

    async def archive(self, snapshot: MilestoneSnapshot, external_id: str) -> None:
        await self._client.delete_block(external_id)


def build_executors(
    client: WorkspaceClient,
    settings: Settings,
    external_id_lookup: ExternalIdLookup | None = None,
) -> dict[EntityType, SyncExecutor]:
    """Build the executor registry keyed by entity type."""
    return {
        EntityType.PROJECT: ProjectExecutor(
            client, settings.workspace_projects_database_id, external_id_lookup
        ),
        EntityType.MILESTONE: MilestoneExecutor(client, external_id_lookup),
        EntityType.DELIVERABLE: DeliverableExecutor(
            client, settings.workspace_deliverables_database_id, external_id_lookup
        ),
        EntityType.LEAD: LeadExecutor(
            client, settings.workspace_leads_database_id, external_id_lookup
        ),
    }
