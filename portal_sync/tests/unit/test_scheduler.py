"""Unit tests for the scheduled maintenance jobs."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from portal_sync.config import Settings
from portal_sync.infrastructure.scheduler import (
    PENDING_SWEEP_JOB_ID,
    PURGE_TASKS_JOB_ID,
    get_scheduler,
    get_scheduler_status,
    pending_sweep_job,
    purge_tasks_job,
    schedule_sync_jobs,
    stop_scheduler,
)


@pytest.fixture(autouse=True)
def fresh_scheduler():
    stop_scheduler()
    yield
    stop_scheduler()


@pytest.fixture
def orchestrator():
    orchestrator = MagicMock()
    orchestrator.sync_all_pending = AsyncMock(return_value={"PROJECT": 2, "LEAD": 1})
    orchestrator.queue = MagicMock()
    orchestrator.queue.purge.return_value = 4
    return orchestrator


class TestJobs:
    """Test suite for the job coroutines."""

    async def test_pending_sweep_runs_orchestrator_sweep(self, orchestrator):
        """Test the sweep job delegates to sync_all_pending."""
        await pending_sweep_job(orchestrator)

        orchestrator.sync_all_pending.assert_awaited_once_with()

    async def test_pending_sweep_survives_errors(self, orchestrator):
        """Test a failing sweep is logged and does not raise."""
        orchestrator.sync_all_pending.side_effect = RuntimeError("db down")

        await pending_sweep_job(orchestrator)

        orchestrator.sync_all_pending.assert_awaited_once()

    async def test_purge_passes_retention(self, orchestrator):
        """Test the purge job forwards the retention window to the queue."""
        await purge_tasks_job(orchestrator.queue, 3600)

        orchestrator.queue.purge.assert_called_once_with(3600)

    async def test_purge_survives_errors(self, orchestrator):
        """Test a failing purge is logged and does not raise."""
        orchestrator.queue.purge.side_effect = RuntimeError("boom")

        await purge_tasks_job(orchestrator.queue, 60)

        orchestrator.queue.purge.assert_called_once_with(60)


class TestScheduleSyncJobs:
    """Test suite for job registration."""

    def test_registers_sweep_and_purge(self, orchestrator):
        """Test both jobs are registered with intervals taken from settings."""
        settings = Settings(
            database_url="postgresql://db/x",
            sync_sweep_interval_minutes=10,
            sync_task_retention_minutes=60,
        )

        schedule_sync_jobs(orchestrator, settings)

        scheduler = get_scheduler()
        sweep = scheduler.get_job(PENDING_SWEEP_JOB_ID)
        purge = scheduler.get_job(PURGE_TASKS_JOB_ID)
        assert sweep.trigger.interval == timedelta(minutes=10)
        assert sweep.kwargs == {"orchestrator": orchestrator}
        assert purge.trigger.interval == timedelta(seconds=900)
        assert purge.kwargs == {"queue": orchestrator.queue, "retention_seconds": 3600}

    def test_short_retention_purges_at_most_every_minute(self, orchestrator):
        """Test the purge interval never drops below sixty seconds."""
        settings = Settings(database_url="postgresql://db/x", sync_task_retention_minutes=1)

        schedule_sync_jobs(orchestrator, settings)

        purge = get_scheduler().get_job(PURGE_TASKS_JOB_ID)
        assert purge.trigger.interval == timedelta(seconds=60)

    def test_status_lists_registered_jobs(self, orchestrator):
        """Test the status report counts the registered jobs."""
        schedule_sync_jobs(orchestrator, Settings(database_url="postgresql://db/x"))

        status = get_scheduler_status()

        assert status["running"] is False
        assert status["job_count"] == 2
        assert {job["id"] for job in status["jobs"]} == {PENDING_SWEEP_JOB_ID, PURGE_TASKS_JOB_ID}
