"""Domain entities for portal workspace sync."""

from portal_sync.domain.entities.base import (
    EntitySyncStatus,
    EntityType,
    SyncOperation,
    SyncPriority,
    SyncSnapshot,
    SyncTaskStatus,
)
from portal_sync.domain.entities.deliverable import DeliverableSnapshot
from portal_sync.domain.entities.lead import LeadSnapshot
from portal_sync.domain.entities.milestone import MilestoneSnapshot
from portal_sync.domain.entities.project import MilestoneSummary, ProjectSnapshot

SNAPSHOT_TYPES: dict[EntityType, type[SyncSnapshot]] = {
    EntityType.PROJECT: ProjectSnapshot,
    EntityType.MILESTONE: MilestoneSnapshot,
    EntityType.DELIVERABLE: DeliverableSnapshot,
    EntityType.LEAD: LeadSnapshot,
}

__all__ = [
    "SNAPSHOT_TYPES",
    "DeliverableSnapshot",
    "EntitySyncStatus",
    "EntityType",
    "LeadSnapshot",
    "MilestoneSnapshot",
    "MilestoneSummary",
    "ProjectSnapshot",
    "SyncOperation",
    "SyncPriority",
    "SyncSnapshot",
    "SyncTaskStatus",
]
