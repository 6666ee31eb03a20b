"""Scheduler package for triggering sync runs."""

from .job_scheduler import SyncScheduler, SchedulerError

__all__ = [
    "SyncScheduler",
    "SchedulerError"
]
