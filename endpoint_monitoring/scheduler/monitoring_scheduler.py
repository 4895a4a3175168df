from __future__ import annotations

import asyncio
import threading
from typing import Any, Optional

import structlog

from endpoint_monitoring.config import SchedulerConfig
from endpoint_monitoring.scheduler.job_scheduler import JobScheduler
from endpoint_monitoring.service import MonitoringService


logger = structlog.get_logger(__name__)

ACTIVE_CHECKS_JOB_ID = "endpoint-monitoring.active-checks"
CLEANUP_JOB_ID = "endpoint-monitoring.cleanup"


class MonitoringScheduler:
    """The two periodic jobs: the per-minute check tick and the daily cleanup."""

    def __init__(self, service: MonitoringService, config: Optional[SchedulerConfig] = None) -> None:
        self.service = service
        self.config = config or SchedulerConfig()
        self.jobs = JobScheduler(self.config)
        self._registered = False

    async def active_checks_tick(self) -> None:
        try:
            await self.service.run_active_checks()
        except Exception as exc:
            logger.error("Active checks tick failed", error=str(exc))

    async def cleanup_tick(self) -> None:
        try:
            await asyncio.to_thread(self.service.delete_old_checks)
        except Exception as exc:
            logger.error("Cleanup tick failed", error=str(exc))
        try:
            await asyncio.to_thread(self.service.purge_throttle_entries)
        except Exception as exc:
            logger.error("Throttle purge failed", error=str(exc))

    def register_jobs(self) -> None:
        if self._registered:
            return
        self.jobs.add_cron_job(
            ACTIVE_CHECKS_JOB_ID,
            self.active_checks_tick,
            self.config.check_cron,
            description="Check every active endpoint",
        )
        self.jobs.add_cron_job(
            CLEANUP_JOB_ID,
            self.cleanup_tick,
            self.config.cleanup_cron,
            description="Delete check history past retention",
        )
        self._registered = True

    @property
    def running(self) -> bool:
        return self.jobs.running

    async def start(self) -> None:
        self.register_jobs()
        await self.jobs.start()

    async def stop(self) -> None:
        await self.jobs.stop()

    def status(self) -> dict[str, Any]:
        return self.jobs.get_scheduler_status()


_instance: Optional[MonitoringScheduler] = None
_instance_lock = threading.Lock()


def get_monitoring_scheduler(
    service: Optional[MonitoringService] = None,
    config: Optional[SchedulerConfig] = None,
) -> MonitoringScheduler:
    """Process-wide scheduler; later calls return the first instance."""
    global _instance
    with _instance_lock:
        if _instance is not None:
            if service is not None and service is not _instance.service:
                logger.info("Monitoring scheduler already initialized, reusing existing instance")
            return _instance
        if service is None:
            raise RuntimeError("Monitoring scheduler is not initialized; pass a MonitoringService")
        _instance = MonitoringScheduler(service, config)
        logger.info("Monitoring scheduler initialized")
        return _instance


def peek_monitoring_scheduler() -> Optional[MonitoringScheduler]:
    return _instance


async def reset_monitoring_scheduler() -> None:
    """Stop and forget the process scheduler (tests and shutdown)."""
    global _instance
    with _instance_lock:
        instance, _instance = _instance, None
    if instance is not None:
        await instance.stop()
