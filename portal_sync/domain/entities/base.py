"""Base types shared by syncable portal entities."""

from enum import Enum, IntEnum
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field


class EntityType(str, Enum):
    """Domain entity types mirrored into the workspace."""

    PROJECT = "PROJECT"
    MILESTONE = "MILESTONE"
    DELIVERABLE = "DELIVERABLE"
    LEAD = "LEAD"

    @classmethod
    def all(cls) -> list[str]:
        """Return all entity type values."""
        return [member.value for member in cls]

    @classmethod
    def parse(cls, value: "str | EntityType") -> "EntityType":
        """Accept either case ('project' or 'PROJECT')."""
        if isinstance(value, cls):
            return value
        return cls(str(value).upper())

    @property
    def has_parent_project(self) -> bool:
        """Milestones and deliverables live under a project page."""
        return self in (EntityType.MILESTONE, EntityType.DELIVERABLE)


class SyncOperation(str, Enum):
    """External operation requested by a task."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SyncTaskStatus(str, Enum):
    """Lifecycle of a queued task."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (
            SyncTaskStatus.COMPLETED,
            SyncTaskStatus.FAILED,
            SyncTaskStatus.CANCELLED,
        )


class EntitySyncStatus(str, Enum):
    """Sync status projection stored on each domain record."""

    PENDING = "PENDING"
    SYNCING = "SYNCING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


class SyncPriority(IntEnum):
    """Priority levels for sync tasks. Lower value = higher priority."""

    CREATE = 1
    STATUS_CHANGE = 2
    UPDATE = 3
    DELETE = 4

    @classmethod
    def for_operation(
        cls, operation: SyncOperation, status_changed: bool = False
    ) -> "SyncPriority":
        if operation == SyncOperation.CREATE:
            return cls.CREATE
        if operation == SyncOperation.DELETE:
            return cls.DELETE
        return cls.STATUS_CHANGE if status_changed else cls.UPDATE


class SyncSnapshot(BaseModel):
    """Immutable snapshot of the fields an executor needs.

    Snapshots are plain data taken at event time; executors never read the
    live database row.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    entity_type: ClassVar[EntityType]

    id: str = Field(..., description="Local entity ID")
    external_id: Optional[str] = Field(None, description="Workspace page/block ID")

    def to_payload(self) -> dict[str, Any]:
        """Serialize to a JSON-safe dict for the task payload."""
        return self.model_dump(mode="json")

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "SyncSnapshot":
        return cls.model_validate(dict(payload))
