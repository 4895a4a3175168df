"""Scheduler module for the periodic monitoring jobs."""

from .job_scheduler import JobScheduler
from .monitoring_scheduler import (
    ACTIVE_CHECKS_JOB_ID,
    CLEANUP_JOB_ID,
    MonitoringScheduler,
    get_monitoring_scheduler,
    peek_monitoring_scheduler,
    reset_monitoring_scheduler,
)

__all__ = [
    "ACTIVE_CHECKS_JOB_ID",
    "CLEANUP_JOB_ID",
    "JobScheduler",
    "MonitoringScheduler",
    "get_monitoring_scheduler",
    "peek_monitoring_scheduler",
    "reset_monitoring_scheduler",
]
