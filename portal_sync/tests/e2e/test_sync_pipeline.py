"""End-to-end tests for the sync pipeline.

These tests run the real dispatcher, task store, rate limiter and
orchestrator against scripted executors, so they exercise worker timing,
retry backoff and completion callbacks without a workspace or database.
"""

import asyncio

import pytest

from portal_sync.core.exceptions import (
    WorkspaceRateLimitError,
    WorkspaceServerError,
    WorkspaceValidationError,
)
from portal_sync.domain.entities import (
    EntitySyncStatus,
    EntityType,
    MilestoneSnapshot,
    SyncOperation,
    SyncPriority,
    SyncTaskStatus,
)
from portal_sync.domain.services.sync_orchestrator import SyncOrchestrator
from portal_sync.infrastructure.queue import InMemorySyncTaskStore, RateLimiter, SyncQueue
from portal_sync.infrastructure.queue.task import SyncTask

WAIT_TIMEOUT = 5.0


class ScriptedExecutor:
    """Executor returning (or raising) scripted outcomes in call order.

    The last outcome repeats once the script is exhausted.
    """

    def __init__(self, *outcomes, delay: float = 0.0):
        self.outcomes = list(outcomes) or ["ext-default"]
        self.delay = delay
        self.calls: list[SyncTask] = []

    async def execute(self, task: SyncTask) -> str | None:
        self.calls.append(task)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FinishedTasks:
    """Listener collecting finalized tasks, awaitable by count."""

    def __init__(self):
        self.tasks: list[SyncTask] = []
        self._changed = asyncio.Event()

    def __call__(self, task: SyncTask) -> None:
        self.tasks.append(task)
        self._changed.set()

    async def wait_for(self, count: int) -> list[SyncTask]:
        async def _wait():
            while len(self.tasks) < count:
                self._changed.clear()
                await self._changed.wait()

        await asyncio.wait_for(_wait(), timeout=WAIT_TIMEOUT)
        return self.tasks


def make_queue(executors, **kwargs) -> SyncQueue:
    options = {
        "worker_count": 1,
        "tick_interval": 0.01,
        "executor_timeout": 1.0,
        "retry_base_delay": 0.01,
        "retry_max_delay": 0.1,
    }
    options.update(kwargs)
    rate_limiter = options.pop("rate_limiter", None) or RateLimiter(100, 1000)
    return SyncQueue(InMemorySyncTaskStore(), rate_limiter, executors, **options)


def make_task(entity_type, entity_id, operation=SyncOperation.CREATE, priority=1, **kwargs):
    return SyncTask(
        entity_type=entity_type,
        entity_id=entity_id,
        operation=operation,
        priority=priority,
        payload={"id": entity_id},
        **kwargs,
    )


class TestRetryFlow:
    """Test suite for retry, backoff and final status."""

    async def test_transient_failure_then_success(self, repository, sample_project):
        """Test a project create that fails once retryably ends SYNCED on attempt 2."""
        executor = ScriptedExecutor(WorkspaceServerError("Service unavailable"), "ext-123")
        queue = make_queue({EntityType.PROJECT: executor})
        finished = FinishedTasks()
        queue.add_listener(finished)
        orchestrator = SyncOrchestrator(queue, repository)
        repository.add(sample_project)

        await queue.start()
        try:
            task_id = await orchestrator.on_project_created(sample_project)
            await finished.wait_for(1)
        finally:
            await queue.stop()

        task = queue.get_task(task_id)
        assert task.status == SyncTaskStatus.COMPLETED
        assert task.attempts == 2
        assert task.external_id == "ext-123"
        assert len(executor.calls) == 2
        row = repository.row(EntityType.PROJECT, "proj-1")
        assert row["sync_status"] == EntitySyncStatus.SYNCED
        assert row["external_id"] == "ext-123"

    async def test_retries_exhausted(self, repository, sample_lead):
        """Test a task failing on every attempt ends FAILED after max_attempts."""
        executor = ScriptedExecutor(WorkspaceServerError("Service unavailable"))
        queue = make_queue({EntityType.LEAD: executor})
        finished = FinishedTasks()
        queue.add_listener(finished)
        orchestrator = SyncOrchestrator(queue, repository, max_attempts=3)
        repository.add(sample_lead)

        await queue.start()
        try:
            task_id = await orchestrator.on_lead_created(sample_lead)
            await finished.wait_for(1)
        finally:
            await queue.stop()

        task = queue.get_task(task_id)
        assert task.status == SyncTaskStatus.FAILED
        assert task.attempts == 3
        assert len(executor.calls) == 3
        row = repository.row(EntityType.LEAD, "lead-1")
        assert row["sync_status"] == EntitySyncStatus.FAILED
        assert row["sync_error"] == "Service unavailable"

    async def test_terminal_error_not_retried(self):
        """Test validation errors fail the task on the first attempt."""
        executor = ScriptedExecutor(WorkspaceValidationError("body failed validation"))
        queue = make_queue({EntityType.LEAD: executor})
        finished = FinishedTasks()
        queue.add_listener(finished)

        await queue.start()
        try:
            queue.enqueue(make_task(EntityType.LEAD, "lead-1"))
            tasks = await finished.wait_for(1)
        finally:
            await queue.stop()

        assert tasks[0].status == SyncTaskStatus.FAILED
        assert tasks[0].attempts == 1
        assert tasks[0].last_error == "body failed validation"

    async def test_unknown_exception_is_terminal(self):
        """Test unexpected executor exceptions are not retried."""
        executor = ScriptedExecutor(KeyError("id"))
        queue = make_queue({EntityType.LEAD: executor})
        finished = FinishedTasks()
        queue.add_listener(finished)

        await queue.start()
        try:
            queue.enqueue(make_task(EntityType.LEAD, "lead-1"))
            tasks = await finished.wait_for(1)
        finally:
            await queue.stop()

        assert tasks[0].status == SyncTaskStatus.FAILED
        assert len(executor.calls) == 1

    async def test_executor_timeout_is_retryable(self):
        """Test a hung executor call times out and is retried."""
        executor = ScriptedExecutor("ext-1", delay=0.5)
        queue = make_queue({EntityType.LEAD: executor}, executor_timeout=0.05)
        finished = FinishedTasks()
        queue.add_listener(finished)

        await queue.start()
        try:
            task_id = queue.enqueue(make_task(EntityType.LEAD, "lead-1", max_attempts=2))
            await finished.wait_for(1)
        finally:
            await queue.stop()

        task = queue.get_task(task_id)
        assert task.status == SyncTaskStatus.FAILED
        assert task.attempts == 2
        assert task.last_error == "Executor timed out after 0.05s"

    def test_backoff_honors_retry_after(self):
        """Test backoff doubles per attempt, caps, and respects Retry-After."""
        queue = make_queue({}, retry_base_delay=1.0, retry_max_delay=60.0)

        assert queue.compute_backoff(1) == 2.0
        assert queue.compute_backoff(3) == 8.0
        assert queue.compute_backoff(10) == 60.0
        assert queue.compute_backoff(1, retry_after=5.0) == 5.0
        error = WorkspaceRateLimitError("slow down", retry_after=5.0)
        assert error.retryable is True


class TestDispatchOrder:
    """Test suite for priority dispatch under the rate limit."""

    async def test_create_dispatched_before_status_changes(self):
        """Test a priority-1 create runs before earlier priority-2 updates."""
        project_executor = ScriptedExecutor("page-project")
        milestone_executor = ScriptedExecutor("block-1")
        queue = make_queue(
            {
                EntityType.PROJECT: project_executor,
                EntityType.MILESTONE: milestone_executor,
            },
            rate_limiter=RateLimiter(1, 1000),
        )
        for n in range(5):
            queue.enqueue(
                make_task(
                    EntityType.MILESTONE,
                    f"ms-{n}",
                    SyncOperation.UPDATE,
                    priority=SyncPriority.STATUS_CHANGE,
                )
            )
        queue.enqueue(make_task(EntityType.PROJECT, "proj-1", priority=SyncPriority.CREATE))
        finished = FinishedTasks()
        queue.add_listener(finished)

        await queue.start()
        try:
            tasks = await finished.wait_for(1)
            await asyncio.sleep(0.1)
        finally:
            await queue.stop()

        assert tasks[0].entity_type == EntityType.PROJECT
        assert len(project_executor.calls) == 1
        # One call per window: the milestones wait for the next second
        assert milestone_executor.calls == []
        assert queue.store.stats()["pending"] == 5

    async def test_rate_limit_bounds_throughput(self):
        """Test no more than the window budget is dispatched per window."""
        executor = ScriptedExecutor("ext")
        queue = make_queue(
            {EntityType.LEAD: executor},
            worker_count=3,
            rate_limiter=RateLimiter(3, 1000),
        )
        for n in range(10):
            queue.enqueue(make_task(EntityType.LEAD, f"lead-{n}"))

        await queue.start()
        try:
            await asyncio.sleep(0.3)
        finally:
            await queue.stop()

        assert len(executor.calls) == 3


class TestLifecycle:
    """Test suite for callbacks, drain and shutdown."""

    async def test_on_complete_callback_fires_once(self):
        """Test per-task callbacks receive the finalized task exactly once."""
        queue = make_queue({EntityType.LEAD: ScriptedExecutor("page-lead")})
        received: list[SyncTask] = []
        done = asyncio.Event()

        async def on_complete(task: SyncTask) -> None:
            received.append(task)
            done.set()

        await queue.start()
        try:
            queue.enqueue(make_task(EntityType.LEAD, "lead-1"), on_complete=on_complete)
            await asyncio.wait_for(done.wait(), timeout=WAIT_TIMEOUT)
            await asyncio.sleep(0.05)
        finally:
            await queue.stop()

        assert len(received) == 1
        assert received[0].external_id == "page-lead"

    async def test_failing_callback_does_not_stop_worker(self):
        """Test a raising callback is logged and later tasks still run."""
        queue = make_queue({EntityType.LEAD: ScriptedExecutor("page-lead")})
        finished = FinishedTasks()

        def broken(task: SyncTask) -> None:
            raise RuntimeError("callback bug")

        queue.add_listener(broken)
        queue.add_listener(finished)

        await queue.start()
        try:
            queue.enqueue(make_task(EntityType.LEAD, "lead-1"))
            queue.enqueue(make_task(EntityType.LEAD, "lead-2"))
            tasks = await finished.wait_for(2)
        finally:
            await queue.stop()

        assert {t.entity_id for t in tasks} == {"lead-1", "lead-2"}

    async def test_stop_drains_in_flight_task(self):
        """Test graceful stop lets the running executor finish."""
        executor = ScriptedExecutor("page-lead", delay=0.1)
        queue = make_queue({EntityType.LEAD: executor})

        await queue.start()
        task_id = queue.enqueue(make_task(EntityType.LEAD, "lead-1"))
        while not executor.calls:
            await asyncio.sleep(0.01)
        await queue.stop(drain=True, timeout=2.0)

        assert queue.get_task(task_id).status == SyncTaskStatus.COMPLETED
        assert queue.running is False

    async def test_stop_timeout_returns_task_to_pending(self):
        """Test a task interrupted by shutdown is handed back for a later run."""
        executor = ScriptedExecutor("page-lead", delay=5.0)
        queue = make_queue({EntityType.LEAD: executor}, executor_timeout=10.0)

        await queue.start()
        task_id = queue.enqueue(make_task(EntityType.LEAD, "lead-1"))
        while not executor.calls:
            await asyncio.sleep(0.01)
        await queue.stop(drain=True, timeout=0.05)

        task = queue.get_task(task_id)
        assert task.status == SyncTaskStatus.PENDING
        assert task.attempts == 1

    async def test_no_dispatch_after_stop(self):
        """Test tasks enqueued after stop stay pending."""
        executor = ScriptedExecutor("ext")
        queue = make_queue({EntityType.LEAD: executor})

        await queue.start()
        await queue.stop()
        task_id = queue.enqueue(make_task(EntityType.LEAD, "lead-1"))
        await asyncio.sleep(0.05)

        assert executor.calls == []
        assert queue.get_task(task_id).status == SyncTaskStatus.PENDING

    async def test_missing_executor_fails_task(self):
        """Test a task with no registered executor fails terminally."""
        queue = make_queue({})
        finished = FinishedTasks()
        queue.add_listener(finished)

        await queue.start()
        try:
            queue.enqueue(make_task(EntityType.DELIVERABLE, "dlv-1"))
            tasks = await finished.wait_for(1)
        finally:
            await queue.stop()

        assert tasks[0].status == SyncTaskStatus.FAILED
        assert "No executor registered" in tasks[0].last_error


class TestParentChildFlow:
    """Test suite for deferred children through the running pipeline."""

    async def test_children_follow_project(self, repository, sample_project):
        """Test a milestone created before its project page syncs once the page exists."""
        project_executor = ScriptedExecutor("page-project")
        milestone_executor = ScriptedExecutor("block-1")
        queue = make_queue(
            {
                EntityType.PROJECT: project_executor,
                EntityType.MILESTONE: milestone_executor,
            }
        )
        finished = FinishedTasks()
        queue.add_listener(finished)
        orchestrator = SyncOrchestrator(queue, repository)
        milestone = MilestoneSnapshot(id="ms-9", project_id="proj-1", name="Kickoff")
        repository.add(sample_project)
        repository.add(milestone)

        assert await orchestrator.on_milestone_created(milestone) is None
        await queue.start()
        try:
            await orchestrator.on_project_created(sample_project)
            await finished.wait_for(2)
        finally:
            await queue.stop()

        assert milestone_executor.calls[0].payload["parent_external_id"] == "page-project"
        assert repository.status_of(EntityType.MILESTONE, "ms-9") == EntitySyncStatus.SYNCED
        assert repository.row(EntityType.MILESTONE, "ms-9")["external_id"] == "block-1"


@pytest.mark.parametrize("worker_count", [1, 3])
async def test_all_tasks_complete(worker_count):
    """Test every enqueued task reaches a terminal state exactly once."""
    executor = ScriptedExecutor("ext")
    queue = make_queue(
        {EntityType.LEAD: executor},
        worker_count=worker_count,
        rate_limiter=RateLimiter(50, 100),
    )
    finished = FinishedTasks()
    queue.add_listener(finished)
    for n in range(20):
        queue.enqueue(make_task(EntityType.LEAD, f"lead-{n}", priority=n % 4 + 1))

    await queue.start()
    try:
        tasks = await finished.wait_for(20)
    finally:
        await queue.stop()

    assert len({t.task_id for t in tasks}) == 20
    assert len(executor.calls) == 20


class PageRecorder:
    """Lead executor that creates pages slowly and records archives."""

    def __init__(self, lookup, delay: float = 0.2):
        self.lookup = lookup
        self.delay = delay
        self.created: list[str] = []
        self.archived: list[str] = []
        self.create_started = asyncio.Event()

    async def execute(self, task: SyncTask) -> str | None:
        if task.operation == SyncOperation.DELETE:
            external_id = task.payload.get("external_id") or await self.lookup(
                task.entity_type, task.entity_id
            )
            if external_id:
                self.archived.append(external_id)
            return external_id
        self.create_started.set()
        await asyncio.sleep(self.delay)
        self.created.append("page-1")
        return "page-1"


class TestConcurrentWorkers:
    """Test suite for per-entity ordering with several workers."""

    async def test_delete_waits_for_in_flight_create(self, repository, sample_lead):
        """Test a delete issued mid-create archives the page the create made."""
        orchestrator = None

        async def lookup(entity_type, entity_id):
            return await orchestrator.lookup_external_id(entity_type, entity_id)

        executor = PageRecorder(lookup)
        queue = make_queue({EntityType.LEAD: executor}, worker_count=2)
        finished = FinishedTasks()
        queue.add_listener(finished)
        orchestrator = SyncOrchestrator(queue, repository)
        repository.add(sample_lead)

        await queue.start()
        try:
            await orchestrator.on_lead_created(sample_lead)
            await asyncio.wait_for(executor.create_started.wait(), timeout=WAIT_TIMEOUT)
            delete_id = await orchestrator.on_lead_deleted(sample_lead)
            await finished.wait_for(2)
        finally:
            await queue.stop()

        assert executor.created == ["page-1"]
        assert executor.archived == ["page-1"]
        assert queue.get_task(delete_id).status == SyncTaskStatus.COMPLETED
        assert [t.operation for t in finished.tasks] == [
            SyncOperation.CREATE,
            SyncOperation.DELETE,
        ]

    async def test_lost_claim_returns_rate_budget(self):
        """Test a unit taken for a claim another consumer won is given back."""

        class ContendedStore(InMemorySyncTaskStore):
            def __init__(self):
                super().__init__()
                self.lost_claims = 0

            def dequeue_next(self, now=None):
                if self.lost_claims == 0:
                    self.lost_claims += 1
                    return None
                return super().dequeue_next(now)

        rate_limiter = RateLimiter(2, 60_000)
        queue = SyncQueue(
            ContendedStore(),
            rate_limiter,
            {EntityType.LEAD: ScriptedExecutor("page-lead")},
            tick_interval=0.01,
        )
        finished = FinishedTasks()
        queue.add_listener(finished)
        queue.enqueue(make_task(EntityType.LEAD, "lead-1"))

        await queue.start()
        try:
            await finished.wait_for(1)
        finally:
            await queue.stop()

        assert queue.store.lost_claims == 1
        assert rate_limiter.remaining() == 1
