"""Project snapshot model."""

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field

from portal_sync.domain.entities.base import EntityType, SyncSnapshot


class MilestoneSummary(BaseModel):
    """Milestone line rendered on the project page body."""

    model_config = ConfigDict(frozen=True)

    name: str
    status: str = "PENDING"
    order: int = 0
    due_date: Optional[datetime] = None


class ProjectSnapshot(SyncSnapshot):
    """Fields needed to render a project page in the workspace."""

    entity_type: ClassVar[EntityType] = EntityType.PROJECT

    name: str = Field(..., min_length=1)
    tier: int = Field(1, ge=1)
    status: str = "INTAKE"
    payment_status: Optional[str] = None
    project_address: Optional[str] = None
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    created_at: Optional[datetime] = None
    milestones: tuple[MilestoneSummary, ...] = ()

    @property
    def progress(self) -> int:
        """Percentage of completed milestones."""
        if not self.milestones:
            return 0
        done = sum(1 for m in self.milestones if m.status == "COMPLETED")
        return round(done / len(self.milestones) * 100)
