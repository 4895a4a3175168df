"""Cron-triggered jobs for the monitoring ticks, keyed by id."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from ..config import SchedulerConfig


logger = structlog.get_logger(__name__)

CRON_FIELDS = ("minute", "hour", "day", "month", "day_of_week")


def parse_cron(expression: str) -> CronTrigger:
    """Five-field crontab syntax, evaluated in UTC."""
    parts = expression.split()
    if len(parts) != len(CRON_FIELDS):
        raise ValueError(f"Invalid cron expression: {expression}")
    return CronTrigger(timezone=timezone.utc, **dict(zip(CRON_FIELDS, parts)))


@dataclass
class _JobRecord:
    cron: str
    description: Optional[str]
    added_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class JobScheduler:
    """Owns an ``AsyncIOScheduler`` and the cron jobs registered on it.

    Re-registering an id drops the previous job first, so a module reload
    or a second setup call never leaves two copies of a tick behind.
    """

    def __init__(self, config: Optional[SchedulerConfig] = None):
        self.config = config or SchedulerConfig()
        self.scheduler = AsyncIOScheduler(
            timezone=timezone.utc,
            job_defaults={
                "coalesce": self.config.coalesce,
                "max_instances": self.config.max_instances,
            },
        )
        self._records: Dict[str, _JobRecord] = {}
        self.running = False

    async def start(self):
        if self.running:
            logger.warning("Job scheduler start ignored, already running")
            return
        self.scheduler.start()
        self.running = True
        logger.info("Job scheduler started", jobs=sorted(self._records))

    async def stop(self):
        if not self.running:
            return
        # In-flight ticks finish on their own; do not block shutdown on them.
        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("Job scheduler stopped")

    def add_cron_job(
        self,
        job_id: str,
        func: Callable[[], Awaitable[None]],
        cron_expression: str,
        description: Optional[str] = None,
    ):
        trigger = parse_cron(cron_expression)
        if job_id in self._records:
            logger.warning("Replacing scheduled job", job_id=job_id)
            # Jobs added before start() are pending and ignore replace_existing.
            self.scheduler.remove_job(job_id)

        self.scheduler.add_job(func, trigger, id=job_id, name=description or job_id, replace_existing=True)
        self._records[job_id] = _JobRecord(cron=cron_expression, description=description)
        logger.info("Scheduled job", job_id=job_id, cron=cron_expression)

    def remove_job(self, job_id: str) -> bool:
        if self._records.pop(job_id, None) is None:
            return False
        self.scheduler.remove_job(job_id)
        logger.info("Unscheduled job", job_id=job_id)
        return True

    def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(job_id)
        job = self.scheduler.get_job(job_id) if record else None
        if job is None:
            return None
        # Pending jobs have no computed next_run_time until the scheduler starts.
        next_run = getattr(job, "next_run_time", None)
        return {
            "job_id": job_id,
            "name": job.name,
            "cron": record.cron,
            "description": record.description,
            "added_at": record.added_at.isoformat(),
            "next_run": next_run.isoformat() if next_run else None,
        }

    def list_jobs(self) -> List[Dict[str, Any]]:
        return [s for s in (self.get_job_status(job_id) for job_id in self._records) if s is not None]

    def get_scheduler_status(self) -> Dict[str, Any]:
        jobs = self.list_jobs()
        upcoming = sorted(j["next_run"] for j in jobs if j["next_run"])
        return {
            "running": self.running,
            "job_count": len(jobs),
            "jobs": jobs,
            "next_run": upcoming[0] if upcoming else None,
        }
