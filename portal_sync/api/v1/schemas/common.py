"""Common Pydantic schemas."""

from typing import Any, Optional

from pydantic import BaseModel, Field


class SyncHealth(BaseModel):
    """Sync queue section of the health check."""

    enabled: bool
    running: bool = False
    in_flight: int = Field(0, ge=0, description="Tasks currently executing")
    tasks: Optional[dict[str, Any]] = Field(None, description="Task counts by status")


class SchedulerHealth(BaseModel):
    """Scheduler section of the health check."""

    running: bool
    jobs_count: int = Field(0, ge=0)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="healthy or unhealthy")
    version: str
    sync: SyncHealth
    scheduler: SchedulerHealth


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: Optional[dict[str, Any]] = None
