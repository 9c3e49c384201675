"""Lead snapshot model."""

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import Field

from portal_sync.domain.entities.base import EntityType, SyncSnapshot


class LeadSnapshot(SyncSnapshot):
    """Intake lead rendered as a page in the leads (CRM) database."""

    entity_type: ClassVar[EntityType] = EntityType.LEAD

    email: str = Field(..., min_length=3)
    name: Optional[str] = None
    project_address: Optional[str] = None
    budget_range: Optional[str] = None
    timeline: Optional[str] = None
    project_type: Optional[str] = None
    has_survey: bool = False
    has_drawings: bool = False
    recommended_tier: int = Field(1, ge=1)
    routing_reason: Optional[str] = None
    status: str = "NEW"
    created_at: Optional[datetime] = None
