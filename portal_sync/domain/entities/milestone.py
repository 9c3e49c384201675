"""Milestone snapshot model."""

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import Field

from portal_sync.domain.entities.base import EntityType, SyncSnapshot


class MilestoneSnapshot(SyncSnapshot):
    """Milestone rendered as a to-do block inside its project page."""

    entity_type: ClassVar[EntityType] = EntityType.MILESTONE

    project_id: str
    parent_external_id: Optional[str] = Field(
        None, description="Workspace page ID of the parent project"
    )
    name: str = Field(..., min_length=1)
    order: int = 0
    status: str = "PENDING"
    due_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_completed(self) -> bool:
        return self.status == "COMPLETED"
