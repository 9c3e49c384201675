"""APScheduler integration for periodic sync maintenance jobs."""

from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from portal_sync.config import Settings
from portal_sync.core.logging import get_logger
from portal_sync.domain.services.sync_orchestrator import SyncOrchestrator
from portal_sync.infrastructure.queue import SyncQueue

logger = get_logger(__name__)

PENDING_SWEEP_JOB_ID = "sync_pending_sweep"
PURGE_TASKS_JOB_ID = "purge_sync_tasks"

# Created lazily, dropped by stop_scheduler
_scheduler: AsyncIOScheduler | None = None


def get_scheduler() -> AsyncIOScheduler:
    """Return the process-wide scheduler, creating it on first use."""
    global _scheduler
    if _scheduler is None:
        _scheduler = AsyncIOScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60,
            },
        )
    return _scheduler


async def pending_sweep_job(orchestrator: SyncOrchestrator) -> None:
    """Queue records stuck in PENDING/SYNCING without an active task."""
    logger.info("Scheduled pending sweep triggered")
    try:
        counts = await orchestrator.sync_all_pending()
        logger.info("Scheduled pending sweep finished", queued=sum(counts.values()))
    except Exception as e:
        logger.error("Scheduled pending sweep failed", error=str(e))


async def purge_tasks_job(queue: SyncQueue, retention_seconds: float) -> None:
    """Garbage-collect terminal tasks older than the retention window."""
    try:
        purged = queue.purge(retention_seconds)
        logger.debug("Terminal task purge finished", purged=purged)
    except Exception as e:
        logger.error("Terminal task purge failed", error=str(e))


def schedule_sync_jobs(
    orchestrator: SyncOrchestrator,
    settings: Settings,
) -> None:
    """Register the sweep and purge jobs."""
    scheduler = get_scheduler()

    scheduler.add_job(
        pending_sweep_job,
        trigger=IntervalTrigger(minutes=settings.sync_sweep_interval_minutes),
        id=PENDING_SWEEP_JOB_ID,
        name="Sync pending sweep",
        kwargs={"orchestrator": orchestrator},
        replace_existing=True,
    )
    logger.info(
        "Scheduled sync job",
        job_id=PENDING_SWEEP_JOB_ID,
        interval_minutes=settings.sync_sweep_interval_minutes,
    )

    retention_seconds = settings.sync_task_retention_minutes * 60
    # Purge runs several times per retention window
    purge_interval = max(retention_seconds // 4, 60)
    scheduler.add_job(
        purge_tasks_job,
        trigger=IntervalTrigger(seconds=purge_interval),
        id=PURGE_TASKS_JOB_ID,
        name="Purge terminal sync tasks",
        kwargs={"queue": orchestrator.queue, "retention_seconds": retention_seconds},
        replace_existing=True,
    )
    logger.info(
        "Scheduled sync job",
        job_id=PURGE_TASKS_JOB_ID,
        interval_seconds=purge_interval,
        retention_minutes=settings.sync_task_retention_minutes,
    )


def start_scheduler() -> None:
    """Start the scheduler unless it is already running."""
    scheduler = get_scheduler()
    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started")


def stop_scheduler() -> None:
    """Stop the scheduler and drop it; the next start binds a fresh event loop."""
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    _scheduler = None


def get_scheduler_status() -> dict[str, Any]:
    """Running flag plus the registered jobs and their next fire times."""
    scheduler = get_scheduler()
    jobs = [_describe_job(job) for job in scheduler.get_jobs()]
    return {"running": scheduler.running, "jobs": jobs, "job_count": len(jobs)}


def _describe_job(job: Any) -> dict[str, Any]:
    next_run = getattr(job, "next_run_time", None)
    return {
        "id": job.id,
        "name": job.name,
        "trigger": str(job.trigger),
        "next_run": next_run.isoformat() if next_run else None,
    }
