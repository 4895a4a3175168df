from __future__ import annotations

import time

import pytest

from endpoint_monitoring.alerts.throttle import SqliteThrottleStore
from endpoint_monitoring.config import AlertsConfig, MonitoringConfig, SchedulerConfig
from endpoint_monitoring.scheduler import monitoring_scheduler
from endpoint_monitoring.scheduler.job_scheduler import JobScheduler, parse_cron
from endpoint_monitoring.scheduler.monitoring_scheduler import (
    ACTIVE_CHECKS_JOB_ID,
    CLEANUP_JOB_ID,
    MonitoringScheduler,
    get_monitoring_scheduler,
    peek_monitoring_scheduler,
    reset_monitoring_scheduler,
)
from endpoint_monitoring.service import MonitoringService
from endpoint_monitoring.storage import MonitoringStore


class _Clock:
    def __init__(self, start: float) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture(autouse=True)
def _fresh_singleton(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(monitoring_scheduler, "_instance", None)


def test_parse_cron_requires_five_fields() -> None:
    parse_cron("*/5 * * * *")
    with pytest.raises(ValueError, match="Invalid cron expression"):
        parse_cron("* * *")


def test_singleton_requires_service_then_reuses_it(store: MonitoringStore) -> None:
    with pytest.raises(RuntimeError):
        get_monitoring_scheduler()
    assert peek_monitoring_scheduler() is None

    service = MonitoringService(store)
    first = get_monitoring_scheduler(service)
    second = get_monitoring_scheduler(MonitoringService(store))

    assert first is second
    assert first.service is service
    assert get_monitoring_scheduler() is first


def test_jobs_registered_once(store: MonitoringStore) -> None:
    sched = MonitoringScheduler(MonitoringService(store))
    sched.register_jobs()
    sched.register_jobs()

    ids = sorted(j["job_id"] for j in sched.jobs.list_jobs())
    assert ids == sorted([ACTIVE_CHECKS_JOB_ID, CLEANUP_JOB_ID])
    assert len(sched.jobs.scheduler.get_jobs()) == 2


def test_re_adding_a_job_id_replaces_it() -> None:
    jobs = JobScheduler(SchedulerConfig())

    async def tick() -> None:
        return None

    jobs.add_cron_job("tick", tick, "* * * * *")
    jobs.add_cron_job("tick", tick, "*/2 * * * *")

    assert len(jobs.scheduler.get_jobs()) == 1
    assert jobs.get_job_status("tick")["cron"] == "*/2 * * * *"
    assert jobs.remove_job("tick") is True
    assert jobs.remove_job("tick") is False


@pytest.mark.asyncio
async def test_start_status_and_reset(store: MonitoringStore) -> None:
    sched = get_monitoring_scheduler(MonitoringService(store), SchedulerConfig(enabled=True))
    try:
        await sched.start()
        await sched.start()
        status = sched.status()
        assert status["running"] is True
        assert status["job_count"] == 2
        assert status["next_run"] is not None
    finally:
        await reset_monitoring_scheduler()

    assert sched.running is False
    assert peek_monitoring_scheduler() is None


@pytest.mark.asyncio
async def test_ticks_swallow_service_errors(store: MonitoringStore, monkeypatch: pytest.MonkeyPatch) -> None:
    service = MonitoringService(store)
    sched = MonitoringScheduler(service)

    async def boom() -> dict:
        raise RuntimeError("db gone")

    def boom_sync() -> int:
        raise RuntimeError("db gone")

    monkeypatch.setattr(service, "run_active_checks", boom)
    monkeypatch.setattr(service, "delete_old_checks", boom_sync)

    await sched.active_checks_tick()
    await sched.cleanup_tick()


@pytest.mark.asyncio
async def test_cleanup_tick_purges_expired_cooldowns(store: MonitoringStore, monkeypatch: pytest.MonkeyPatch) -> None:
    clock = _Clock(time.time())
    service = MonitoringService(
        store, config=MonitoringConfig(alerts=AlertsConfig(throttle_store="sqlite")), clock=clock
    )
    throttle = service.evaluator.throttle
    assert isinstance(throttle.store, SqliteThrottleStore)
    throttle.mark_notified("rule-1")
    assert store.throttle_get("alert:rule-1", now_ts=clock.now) is not None

    def boom_sync() -> int:
        raise RuntimeError("db gone")

    monkeypatch.setattr(service, "delete_old_checks", boom_sync)
    clock.now += 3601
    await MonitoringScheduler(service).cleanup_tick()

    # Nothing left for a second purge: the tick removed the expired row.
    assert store.throttle_purge(now_ts=clock.now) == 0
