"""Deliverable snapshot model."""

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import Field

from portal_sync.domain.entities.base import EntityType, SyncSnapshot


class DeliverableSnapshot(SyncSnapshot):
    """Deliverable rendered as a page in the deliverables database."""

    entity_type: ClassVar[EntityType] = EntityType.DELIVERABLE

    project_id: str
    parent_external_id: Optional[str] = Field(
        None, description="Workspace page ID of the parent project"
    )
    project_name: Optional[str] = None
    name: str = Field(..., min_length=1)
    category: str = "Document"
    file_url: Optional[str] = None
    file_type: Optional[str] = None
    file_size: int = Field(0, ge=0)
    description: Optional[str] = None
    created_at: Optional[datetime] = None
