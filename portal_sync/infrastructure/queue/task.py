"""Sync task model."""

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping

from portal_sync.domain.entities.base import EntityType, SyncOperation, SyncTaskStatus

DEFAULT_MAX_ATTEMPTS = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def freeze_payload(payload: Mapping[str, Any] | None) -> Mapping[str, Any]:
    """Deep-copy a payload into a read-only mapping."""
    return MappingProxyType(copy.deepcopy(dict(payload or {})))


@dataclass
class SyncTask:
    """A unit of work reconciling one domain entity with the workspace."""

    entity_type: EntityType
    entity_id: str
    operation: SyncOperation
    priority: int = 3
    payload: Mapping[str, Any] = field(default_factory=dict)
    task_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: SyncTaskStatus = SyncTaskStatus.PENDING
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    last_error: str | None = None
    external_id: str | None = None
    # Store clock reading before which the task must not be dispatched
    next_attempt_at: float = 0.0
    seq: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def dedup_key(self) -> str:
        """Key identifying the entity this task reconciles."""
        return f"{self.entity_type.value}:{self.entity_id}"

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """Serialize for status endpoints and logs."""
        return {
            "task_id": self.task_id,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "operation": self.operation.value,
            "priority": self.priority,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "last_error": self.last_error,
            "external_id": self.external_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
