"""Job scheduler for triggering sync runs."""

from typing import Dict, Any, List, Optional, TYPE_CHECKING
from datetime import datetime, timezone, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.events import EVENT_JOB_EXECUTED, EVENT_JOB_ERROR, EVENT_JOB_MISSED

from ..config.schema import SyncDirection, SyncOptions
from ..utils.logging import get_logger

if TYPE_CHECKING:
    from ..core.sync_engine import SyncEngine


ONE_SHOT_PREFIX = "sync-once-"
RECURRING_BOTH_JOB = "sync-recurring-both"
RECURRING_FROM_REMOTE_JOB = "sync-recurring-from_remote"
DAILY_BOTH_JOB = "sync-daily-both"

FROM_REMOTE_OFFSET = timedelta(minutes=5)

# One-shots can fire while an earlier run of their direction still executes;
# the engine guard decides whether they proceed
ONE_SHOT_MAX_INSTANCES = 3


class SchedulerError(Exception):
    """Raised when scheduler operations fail."""
    pass


class SyncScheduler:
    """Owns the one-shot and recurring sync triggers for a single engine."""

    def __init__(self, engine: "SyncEngine", options: SyncOptions):
        """Initialize the scheduler.

        Args:
            engine: Engine whose ``run_sync`` the jobs call
            options: Sync options providing frequency and auto-sync
        """
        self.engine = engine
        self.options = options
        self.logger = get_logger(self.__class__.__name__)

        self.scheduler = AsyncIOScheduler(
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 300
            }
        )

        self.job_stats: Dict[str, Dict[str, Any]] = {}

        self.scheduler.add_listener(self._job_executed, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(self._job_error, EVENT_JOB_ERROR)
        self.scheduler.add_listener(self._job_missed, EVENT_JOB_MISSED)

        self.logger.info(
            "Sync scheduler initialized",
            frequency=options.sync_frequency.value,
            auto_sync=options.auto_sync
        )

    @property
    def running(self) -> bool:
        return self.scheduler.running

    async def start(self):
        """Start the scheduler and, with auto-sync on, the recurring jobs."""
        if self.scheduler.running:
            self.logger.warning("Scheduler is already running")
            return

        try:
            self.scheduler.start()
            if self.options.auto_sync:
                self.add_recurring_jobs()
        except Exception as e:
            self.logger.error("Failed to start scheduler", error=str(e))
            raise SchedulerError(f"Failed to start scheduler: {e}")

        self.logger.info("Sync scheduler started", jobs=len(self.scheduler.get_jobs()))

    async def stop(self, wait: bool = True):
        if not self.scheduler.running:
            self.logger.warning("Scheduler is not running")
            return

        self.scheduler.shutdown(wait=wait)
        self.logger.info("Sync scheduler stopped")

    def defer(self, direction: SyncDirection, delay_seconds: float) -> str:
        """Run ``direction`` once, ``delay_seconds`` from now.

        A pending one-shot run for the same direction is replaced.

        Returns:
            Job ID
        """
        direction = SyncDirection(direction)
        job_id = f"{ONE_SHOT_PREFIX}{direction.value}"
        run_date = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)

        self.scheduler.add_job(
            func=self._execute_sync_job,
            trigger=DateTrigger(run_date=run_date),
            args=[direction],
            id=job_id,
            name=f"Sync once: {direction.value}",
            max_instances=ONE_SHOT_MAX_INSTANCES,
            replace_existing=True
        )

        self.logger.info("Sync run deferred", job_id=job_id, run_date=run_date.isoformat())
        return job_id

    def add_recurring_jobs(self):
        """Interval jobs: ``both`` at the configured frequency, ``from_remote``
        at the same frequency five minutes later, and a daily ``both``."""
        hours = self.options.sync_frequency.interval_hours
        first_run = datetime.now(timezone.utc) + timedelta(hours=hours)

        self.scheduler.add_job(
            func=self._execute_sync_job,
            trigger=IntervalTrigger(hours=hours, start_date=first_run),
            args=[SyncDirection.BOTH],
            id=RECURRING_BOTH_JOB,
            name="Recurring sync: both",
            replace_existing=True
        )
        self.scheduler.add_job(
            func=self._execute_sync_job,
            trigger=IntervalTrigger(hours=hours, start_date=first_run + FROM_REMOTE_OFFSET),
            args=[SyncDirection.FROM_REMOTE],
            id=RECURRING_FROM_REMOTE_JOB,
            name="Recurring sync: from_remote",
            replace_existing=True
        )
        self.scheduler.add_job(
            func=self._execute_sync_job,
            trigger=IntervalTrigger(days=1),
            args=[SyncDirection.BOTH],
            id=DAILY_BOTH_JOB,
            name="Daily sync: both",
            replace_existing=True
        )

        self.logger.info("Recurring sync jobs added", interval_hours=hours)

    def remove_recurring_jobs(self):
        for job_id in (RECURRING_BOTH_JOB, RECURRING_FROM_REMOTE_JOB, DAILY_BOTH_JOB):
            if self.scheduler.get_job(job_id):
                self.scheduler.remove_job(job_id)
        self.logger.info("Recurring sync jobs removed")

    def get_jobs(self) -> List[Dict[str, Any]]:
        """Pending jobs with their next run time and execution stats."""
        jobs = []
        for job in self.scheduler.get_jobs():
            info = {
                "job_id": job.id,
                "name": job.name,
                "next_run": getattr(job, "next_run_time", None),
            }
            info.update(self.job_stats.get(job.id, {}))
            jobs.append(info)
        return jobs

    def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = self.scheduler.get_job(job_id)
        if job is None and job_id not in self.job_stats:
            return None

        status = dict(self.job_stats.get(job_id, {}))
        status.update({
            "job_id": job_id,
            "next_run": getattr(job, "next_run_time", None) if job else None,
            "is_scheduled": job is not None
        })
        return status

    async def _execute_sync_job(self, direction: SyncDirection):
        self.logger.info("Executing sync job", direction=direction.value)
        return await self.engine.run_sync(direction)

    def _stats_for(self, job_id: str) -> Dict[str, Any]:
        return self.job_stats.setdefault(job_id, {
            "last_run": None,
            "run_count": 0,
            "error_count": 0,
            "last_result": None
        })

    def _job_executed(self, event):
        stats = self._stats_for(event.job_id)
        stats["last_run"] = datetime.now(timezone.utc)
        stats["run_count"] += 1

        report = getattr(event, "retval", None)
        if report is not None and hasattr(report, "to_dict"):
            stats["last_result"] = report.to_dict()

    def _job_error(self, event):
        stats = self._stats_for(event.job_id)
        stats["last_run"] = datetime.now(timezone.utc)
        stats["run_count"] += 1
        stats["error_count"] += 1
        stats["last_result"] = {"error_message": str(event.exception)}

        self.logger.error("Scheduled job failed", job_id=event.job_id, error=str(event.exception))

    def _job_missed(self, event):
        self.logger.warning(
            "Scheduled job missed",
            job_id=event.job_id,
            scheduled_run_time=event.scheduled_run_time
        )
