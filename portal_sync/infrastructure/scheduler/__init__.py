"""Scheduler module for periodic sync maintenance jobs."""

from portal_sync.infrastructure.scheduler.scheduler import (
    PENDING_SWEEP_JOB_ID,
    PURGE_TASKS_JOB_ID,
    get_scheduler,
    get_scheduler_status,
    pending_sweep_job,
    purge_tasks_job,
    schedule_sync_jobs,
    start_scheduler,
    stop_scheduler,
)

__all__ = [
    "PENDING_SWEEP_JOB_ID",
    "PURGE_TASKS_JOB_ID",
    "get_scheduler",
    "get_scheduler_status",
    "pending_sweep_job",
    "purge_tasks_job",
    "schedule_sync_jobs",
    "start_scheduler",
    "stop_scheduler",
]
