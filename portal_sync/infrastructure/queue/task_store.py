"""Storage for sync tasks: enqueue, priority dequeue and state transitions."""

import itertools
import threading
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import replace
from typing import Any, Callable, Mapping

from portal_sync.core.exceptions import (
    InvalidTaskError,
    InvalidTaskTransitionError,
    TaskNotFoundError,
)
from portal_sync.core.logging import get_logger
from portal_sync.domain.entities.base import EntityType, SyncOperation, SyncTaskStatus
from portal_sync.infrastructure.queue.task import SyncTask, freeze_payload, utcnow

logger = get_logger(__name__)


class SyncTaskStore(ABC):
    """Task storage contract.

    Implementations own every task state transition. Returned tasks are
    copies; mutating them has no effect on the stored task.
    """

    @abstractmethod
    def enqueue(self, task: SyncTask) -> str: ...

    @abstractmethod
    def dequeue_next(self, now: float | None = None) -> SyncTask | None: ...

    @abstractmethod
    def complete(self, task_id: str, external_id: str | None) -> SyncTask: ...

    @abstractmethod
    def fail(
        self,
        task_id: str,
        error: str,
        retryable: bool,
        retry_delay: float | None = None,
    ) -> SyncTask: ...

    @abstractmethod
    def cancel(self, task_id: str, reason: str) -> SyncTask: ...

    @abstractmethod
    def replace_payload(
        self,
        task_id: str,
        payload: Mapping[str, Any],
        operation: SyncOperation | None = None,
        priority: int | None = None,
    ) -> SyncTask: ...

    @abstractmethod
    def get_task(self, task_id: str) -> SyncTask | None: ...

    @abstractmethod
    def find_active(self, entity_type: EntityType, entity_id: str) -> list[SyncTask]: ...

    @abstractmethod
    def next_ready_at(self) -> float | None: ...

    @abstractmethod
    def purge_terminal(self, older_than_seconds: float) -> int: ...

    @abstractmethod
    def list_tasks(
        self,
        status: SyncTaskStatus | None = None,
        limit: int = 100,
    ) -> list[SyncTask]: ...

    @abstractmethod
    def stats(self) -> dict[str, Any]: ...

    @abstractmethod
    def now(self) -> float: ...


class InMemorySyncTaskStore(SyncTaskStore):
    """Thread-safe in-process task store.

    Tasks are kept in a dict keyed by id with three indexes: the set of
    PENDING ids (scanned on dequeue), the active ids per entity (used
    for coalescing) and the entities with a task in PROCESSING. At most
    one task per entity runs at a time, so a DELETE queued behind an
    in-flight CREATE waits for the page it has to archive. The queue is not the system of record, so nothing
    here survives a restart.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._tasks: dict[str, SyncTask] = {}
        self._pending: set[str] = set()
        self._active_by_entity: dict[tuple[EntityType, str], set[str]] = defaultdict(set)
        self._processing: set[tuple[EntityType, str]] = set()
        self._finished_at: dict[str, float] = {}
        self._seq = itertools.count(1)

    def now(self) -> float:
        return self._clock()

    # --- helpers (caller holds the lock) ---

    def _require(self, task_id: str) -> SyncTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}", {"task_id": task_id})
        return task

    def _expect(self, task: SyncTask, *statuses: SyncTaskStatus) -> None:
        if task.status not in statuses:
            raise InvalidTaskTransitionError(
                f"Task {task.task_id} is {task.status.value}, "
                f"expected {'/'.join(s.value for s in statuses)}",
                {"task_id": task.task_id, "status": task.status.value},
            )

    def _finish(self, task: SyncTask, status: SyncTaskStatus) -> None:
        task.status = status
        task.updated_at = task.completed_at = utcnow()
        self._pending.discard(task.task_id)
        key = (task.entity_type, task.entity_id)
        active = self._active_by_entity.get(key)
        if active is not None:
            active.discard(task.task_id)
            if not active:
                del self._active_by_entity[key]
        self._finished_at[task.task_id] = self._clock()

    def _blocked(self, task: SyncTask) -> bool:
        return (task.entity_type, task.entity_id) in self._processing

    def _release(self, task: SyncTask) -> None:
        self._processing.discard((task.entity_type, task.entity_id))

    @staticmethod
    def _validate(task: SyncTask) -> None:
        try:
            task.entity_type = EntityType.parse(task.entity_type)
        except ValueError as e:
            raise InvalidTaskError(f"Invalid entity type: {task.entity_type}") from e
        try:
            task.operation = SyncOperation(task.operation)
        except ValueError as e:
            raise InvalidTaskError(f"Invalid operation: {task.operation}") from e
        if not task.entity_id:
            raise InvalidTaskError("entity_id is required")
        if task.max_attempts < 1:
            raise InvalidTaskError("max_attempts must be >= 1")
        if task.priority < 0:
            raise InvalidTaskError("priority must be >= 0")

    # --- contract ---

    def enqueue(self, task: SyncTask) -> str:
        self._validate(task)
        stored = replace(
            task,
            payload=freeze_payload(task.payload),
            status=SyncTaskStatus.PENDING,
            attempts=0,
            last_error=None,
            external_id=None,
            next_attempt_at=0.0,
            completed_at=None,
        )
        with self._lock:
            if stored.task_id in self._tasks:
                raise InvalidTaskError(f"Duplicate task id: {stored.task_id}")
            stored.seq = next(self._seq)
            stored.created_at = stored.updated_at = utcnow()
            self._tasks[stored.task_id] = stored
            self._pending.add(stored.task_id)
            self._active_by_entity[(stored.entity_type, stored.entity_id)].add(
                stored.task_id
            )
        return stored.task_id

    def dequeue_next(self, now: float | None = None) -> SyncTask | None:
        """Claim the most urgent ready task, marking it PROCESSING."""
        with self._lock:
            now = self._clock() if now is None else now
            best: SyncTask | None = None
            for task_id in self._pending:
                task = self._tasks[task_id]
                if task.next_attempt_at > now or self._blocked(task):
                    continue
                if best is None or (task.priority, task.seq) < (best.priority, best.seq):
                    best = task
            if best is None:
                return None

            self._pending.discard(best.task_id)
            self._processing.add((best.entity_type, best.entity_id))
            best.status = SyncTaskStatus.PROCESSING
            best.attempts += 1
            best.updated_at = utcnow()
            return replace(best)

    def complete(self, task_id: str, external_id: str | None) -> SyncTask:
        with self._lock:
            task = self._require(task_id)
            self._expect(task, SyncTaskStatus.PROCESSING)
            task.external_id = external_id
            self._release(task)
            self._finish(task, SyncTaskStatus.COMPLETED)
            return replace(task)

    def fail(
        self,
        task_id: str,
        error: str,
        retryable: bool,
        retry_delay: float | None = None,
    ) -> SyncTask:
        """Record a failed attempt.

        Retryable failures with attempts left go back to PENDING, not
        eligible until ``retry_delay`` seconds from now. Everything else
        becomes FAILED.
        """
        with self._lock:
            task = self._require(task_id)
            self._expect(task, SyncTaskStatus.PROCESSING)
            task.last_error = error
            self._release(task)
            if retryable and task.attempts < task.max_attempts:
                task.status = SyncTaskStatus.PENDING
                task.next_attempt_at = self._clock() + max(retry_delay or 0.0, 0.0)
                task.updated_at = utcnow()
                self._pending.add(task.task_id)
            else:
                self._finish(task, SyncTaskStatus.FAILED)
            return replace(task)

    def cancel(self, task_id: str, reason: str) -> SyncTask:
        with self._lock:
            task = self._require(task_id)
            self._expect(task, SyncTaskStatus.PENDING)
            task.last_error = reason
            self._finish(task, SyncTaskStatus.CANCELLED)
            return replace(task)

    def replace_payload(
        self,
        task_id: str,
        payload: Mapping[str, Any],
        operation: SyncOperation | None = None,
        priority: int | None = None,
    ) -> SyncTask:
        """Swap in a fresher snapshot for a task that has not started yet."""
        with self._lock:
            task = self._require(task_id)
            self._expect(task, SyncTaskStatus.PENDING)
            task.payload = freeze_payload(payload)
            if operation is not None:
                task.operation = SyncOperation(operation)
            if priority is not None:
                task.priority = priority
            task.updated_at = utcnow()
            return replace(task)

    def get_task(self, task_id: str) -> SyncTask | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return replace(task) if task else None

    def find_active(self, entity_type: EntityType, entity_id: str) -> list[SyncTask]:
        """PENDING and PROCESSING tasks for one entity, oldest first."""
        with self._lock:
            ids = self._active_by_entity.get((EntityType.parse(entity_type), entity_id), ())
            tasks = [replace(self._tasks[task_id]) for task_id in ids]
        return sorted(tasks, key=lambda t: t.seq)

    def next_ready_at(self) -> float | None:
        """Earliest time a PENDING task can be claimed.

        Tasks waiting on an in-flight task for the same entity are left
        out; they become claimable when that task finishes.
        """
        with self._lock:
            times = [
                task.next_attempt_at
                for task in (self._tasks[task_id] for task_id in self._pending)
                if not self._blocked(task)
            ]
        return min(times, default=None)

    def purge_terminal(self, older_than_seconds: float) -> int:
        """Drop terminal tasks that finished more than ``older_than_seconds`` ago."""
        with self._lock:
            cutoff = self._clock() - older_than_seconds
            expired = [
                task_id
                for task_id, finished in self._finished_at.items()
                if finished <= cutoff
            ]
            for task_id in expired:
                del self._finished_at[task_id]
                self._tasks.pop(task_id, None)
        if expired:
            logger.info("Purged terminal sync tasks", count=len(expired))
        return len(expired)

    def list_tasks(
        self,
        status: SyncTaskStatus | None = None,
        limit: int = 100,
    ) -> list[SyncTask]:
        """Most recent tasks first, optionally filtered by status."""
        with self._lock:
            tasks = [
                replace(task)
                for task in self._tasks.values()
                if status is None or task.status == status
            ]
        tasks.sort(key=lambda t: t.seq, reverse=True)
        return tasks[:limit]

    def stats(self) -> dict[str, Any]:
        counts = {status.value.lower(): 0 for status in SyncTaskStatus}
        by_entity: dict[str, dict[str, int]] = {
            entity_type.value: {status.value.lower(): 0 for status in SyncTaskStatus}
            for entity_type in EntityType
        }
        with self._lock:
            for task in self._tasks.values():
                key = task.status.value.lower()
                counts[key] += 1
                by_entity[task.entity_type.value][key] += 1
        return {
            **counts,
            "total": sum(counts.values()),
            "by_entity_type": by_entity,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)
