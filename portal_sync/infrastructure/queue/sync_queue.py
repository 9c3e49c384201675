"""Sync queue dispatcher: rate-gated workers executing tasks with retry and backoff."""

import asyncio
import inspect
from collections import defaultdict
from typing import Any, Awaitable, Callable, Mapping

from portal_sync.config import Settings
from portal_sync.core.exceptions import (
    AppException,
    TerminalSyncError,
    is_retryable,
    retry_after_hint,
)
from portal_sync.core.logging import get_logger
from portal_sync.domain.entities.base import EntityType, SyncOperation, SyncTaskStatus
from portal_sync.infrastructure.queue.executors import SyncExecutor
from portal_sync.infrastructure.queue.rate_limiter import RateLimiter
from portal_sync.infrastructure.queue.task import DEFAULT_MAX_ATTEMPTS, SyncTask
from portal_sync.infrastructure.queue.task_store import (
    InMemorySyncTaskStore,
    SyncTaskStore,
)

logger = get_logger(__name__)

CompletionCallback = Callable[[SyncTask], Awaitable[None] | None]


class SyncQueue:
    """Dispatches sync tasks to executors within the external rate budget.

    Each worker waits for a ready task, takes a unit of rate budget,
    claims the most urgent task from the store and runs its executor
    under a timeout. Failures are classified: retryable ones go back to
    the store with exponential backoff, terminal ones finalize the task.
    Callbacks fire once per task when it reaches COMPLETED, FAILED or
    CANCELLED.
    """

    def __init__(
        self,
        store: SyncTaskStore,
        rate_limiter: RateLimiter,
        executors: Mapping[EntityType, SyncExecutor],
        worker_count: int = 1,
        tick_interval: float = 0.25,
        executor_timeout: float = 30.0,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 60.0,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        shutdown_timeout: float = 10.0,
    ) -> None:
        if worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        if worker_count > rate_limiter.max_requests:
            logger.warning(
                "Worker count exceeds rate budget, clamping",
                worker_count=worker_count,
                max_requests=rate_limiter.max_requests,
            )
            worker_count = rate_limiter.max_requests

        self._store = store
        self._rate_limiter = rate_limiter
        self._executors = dict(executors)
        self._worker_count = worker_count
        self._tick_interval = tick_interval
        self._executor_timeout = executor_timeout
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._default_max_attempts = default_max_attempts
        self._shutdown_timeout = shutdown_timeout

        self._callbacks: dict[str, list[CompletionCallback]] = defaultdict(list)
        self._listeners: list[CompletionCallback] = []
        self._in_flight: dict[str, SyncTask] = {}
        self._workers: list[asyncio.Task] = []
        self._running = False
        self._wake = asyncio.Event()
        self._stopping = asyncio.Event()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        executors: Mapping[EntityType, SyncExecutor],
        store: SyncTaskStore | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> "SyncQueue":
        return cls(
            store=store or InMemorySyncTaskStore(),
            rate_limiter=rate_limiter
            or RateLimiter(
                max_requests_per_window=settings.sync_rate_limit_requests,
                window_duration_ms=settings.sync_rate_limit_window_ms,
            ),
            executors=executors,
            worker_count=settings.effective_worker_count,
            tick_interval=settings.sync_tick_interval_ms / 1000.0,
            executor_timeout=settings.sync_executor_timeout_seconds,
            retry_base_delay=settings.sync_retry_base_delay_ms / 1000.0,
            retry_max_delay=settings.sync_retry_max_delay_ms / 1000.0,
            default_max_attempts=settings.sync_max_attempts,
            shutdown_timeout=settings.sync_shutdown_timeout_seconds,
        )

    @property
    def store(self) -> SyncTaskStore:
        return self._store

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def running(self) -> bool:
        return self._running

    @property
    def default_max_attempts(self) -> int:
        return self._default_max_attempts

    # --- lifecycle ---

    async def start(self) -> None:
        """Start queue workers."""
        if self._running:
            return
        self._running = True
        self._stopping.clear()
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"sync_queue_worker_{n}")
            for n in range(self._worker_count)
        ]
        logger.info("SyncQueue started", workers=self._worker_count)

    async def stop(self, drain: bool = True, timeout: float | None = None) -> None:
        """Stop queue workers.

        With ``drain`` no new task is dispatched and in-flight executions
        get up to ``timeout`` seconds to finish before workers are cancelled.
        """
        if not self._running:
            return
        self._running = False
        self._stopping.set()
        self._wake.set()

        workers = list(self._workers)
        if drain and workers:
            _, pending = await asyncio.wait(
                workers, timeout=timeout if timeout is not None else self._shutdown_timeout
            )
            if pending:
                logger.warning(
                    "Drain timed out, cancelling workers",
                    in_flight=list(self._in_flight),
                )

        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers = []
        logger.info("SyncQueue stopped")

    # --- task API ---

    def enqueue(self, task: SyncTask, on_complete: CompletionCallback | None = None) -> str:
        """Store a task and wake idle workers.

        Raises:
            InvalidTaskError: If the task fails validation
        """
        task_id = self._store.enqueue(task)
        if on_complete is not None:
            self._callbacks[task_id].append(on_complete)
        self._wake.set()
        logger.info(
            "Sync task queued",
            task_id=task_id,
            entity_type=task.entity_type.value,
            entity_id=task.entity_id,
            operation=task.operation.value,
            priority=task.priority,
        )
        return task_id

    def replace_payload(
        self,
        task_id: str,
        payload: Mapping[str, Any],
        operation: SyncOperation | None = None,
        priority: int | None = None,
    ) -> SyncTask:
        task = self._store.replace_payload(task_id, payload, operation, priority)
        logger.debug(
            "Sync task coalesced",
            task_id=task_id,
            operation=task.operation.value,
            priority=task.priority,
        )
        return task

    async def cancel(self, task_id: str, reason: str) -> SyncTask:
        """Cancel a PENDING task and fire its callbacks."""
        task = self._store.cancel(task_id, reason)
        logger.info(
            "Sync task cancelled",
            task_id=task_id,
            entity_type=task.entity_type.value,
            entity_id=task.entity_id,
            reason=reason,
        )
        await self._notify(task)
        return task

    def find_active(self, entity_type: EntityType, entity_id: str) -> list[SyncTask]:
        return self._store.find_active(entity_type, entity_id)

    def get_task(self, task_id: str) -> SyncTask | None:
        return self._store.get_task(task_id)

    def list_tasks(
        self, status: SyncTaskStatus | None = None, limit: int = 100
    ) -> list[SyncTask]:
        return self._store.list_tasks(status=status, limit=limit)

    def purge(self, older_than_seconds: float) -> int:
        return self._store.purge_terminal(older_than_seconds)

    def add_listener(self, callback: CompletionCallback) -> None:
        """Register a callback fired for every task that finalizes."""
        self._listeners.append(callback)

    def get_status(self) -> dict[str, Any]:
        """Get current queue status."""
        return {
            "running": self._running,
            "worker_count": self._worker_count,
            "in_flight": list(self._in_flight),
            "rate_limit": self._rate_limiter.get_status(),
            "tasks": self._store.stats(),
        }

    def compute_backoff(self, attempts: int, retry_after: float | None = None) -> float:
        """Delay before the next attempt after ``attempts`` dispatches."""
        delay = min(self._retry_base_delay * (2**attempts), self._retry_max_delay)
        if retry_after is not None and retry_after > delay:
            delay = retry_after
        return delay

    # --- workers ---

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early when the queue is stopping."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=max(seconds, 0.0))
        except asyncio.TimeoutError:
            pass

    async def _wait_until_ready(self) -> bool:
        self._wake.clear()
        now = self._store.now()
        next_at = self._store.next_ready_at()
        if next_at is not None and next_at <= now:
            return True

        timeout = self._tick_interval
        if next_at is not None:
            timeout = min(timeout, next_at - now)
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=max(timeout, 0.0))
        except asyncio.TimeoutError:
            pass
        return False

    async def _worker(self, worker_id: int) -> None:
        """Worker loop: wait for work, gate on rate budget, dispatch."""
        logger.info("Sync worker started", worker_id=worker_id)
        while self._running:
            try:
                if not await self._wait_until_ready():
                    continue
                if not self._rate_limiter.try_acquire():
                    await self._sleep(self._rate_limiter.time_until_available())
                    continue
                if not self._running:
                    break
                task = self._store.dequeue_next()
                if task is None:
                    # Claimed elsewhere since the readiness check
                    self._rate_limiter.release()
                    continue
                await self._process(task)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(
                    "Sync worker iteration failed",
                    worker_id=worker_id,
                    error=str(e),
                    exc_info=True,
                )
                await self._sleep(self._tick_interval)
        logger.info("Sync worker stopped", worker_id=worker_id)

    async def _process(self, task: SyncTask) -> None:
        self._in_flight[task.task_id] = task
        logger.info(
            "Executing sync task",
            task_id=task.task_id,
            entity_type=task.entity_type.value,
            entity_id=task.entity_id,
            operation=task.operation.value,
            attempt=task.attempts,
        )
        try:
            executor = self._executors.get(task.entity_type)
            if executor is None:
                raise TerminalSyncError(
                    f"No executor registered for {task.entity_type.value}"
                )
            with self._rate_limiter.prepaid():
                external_id = await asyncio.wait_for(
                    executor.execute(task), timeout=self._executor_timeout
                )
        except asyncio.CancelledError:
            # Shutdown interrupted the call; hand the task back for a later run
            updated = self._store.fail(
                task.task_id, "Interrupted by shutdown", retryable=True, retry_delay=0.0
            )
            if updated.is_terminal:
                await self._notify(updated)
            raise
        except Exception as e:
            await self._handle_failure(task, e)
        else:
            done = self._store.complete(task.task_id, external_id)
            logger.info(
                "Sync task completed",
                task_id=task.task_id,
                entity_type=task.entity_type.value,
                entity_id=task.entity_id,
                external_id=external_id,
                attempts=done.attempts,
            )
            await self._notify(done)
        finally:
            self._in_flight.pop(task.task_id, None)
            # Tasks held back behind this one may be claimable now
            self._wake.set()

    def _describe(self, error: BaseException) -> str:
        if isinstance(error, AppException):
            return error.message
        if isinstance(error, TimeoutError):
            return f"Executor timed out after {self._executor_timeout}s"
        return str(error) or type(error).__name__

    async def _handle_failure(self, task: SyncTask, error: BaseException) -> None:
        retryable = is_retryable(error)
        delay = self.compute_backoff(task.attempts, retry_after_hint(error)) if retryable else None
        message = self._describe(error)
        updated = self._store.fail(task.task_id, message, retryable, delay)

        if updated.status == SyncTaskStatus.FAILED:
            logger.error(
                "Sync task failed",
                task_id=task.task_id,
                entity_type=task.entity_type.value,
                entity_id=task.entity_id,
                attempts=updated.attempts,
                retryable=retryable,
                error=message,
            )
            await self._notify(updated)
        else:
            logger.warning(
                "Sync task failed, retry scheduled",
                task_id=task.task_id,
                entity_type=task.entity_type.value,
                attempt=updated.attempts,
                max_attempts=updated.max_attempts,
                retry_in=delay,
                error=message,
            )

    async def _notify(self, task: SyncTask) -> None:
        """Fire per-task callbacks then global listeners. Never raises."""
        callbacks = self._callbacks.pop(task.task_id, []) + self._listeners
        for callback in callbacks:
            try:
                result = callback(task)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "Sync task callback failed",
                    task_id=task.task_id,
                    error=str(e),
                    exc_info=True,
                )
