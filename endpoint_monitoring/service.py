"""Check pipeline and read-side statistics.

``MonitoringService`` wires the probe, recorder, alert evaluator and
dispatcher together. The scheduler calls ``run_active_checks`` once per tick;
the API and CLI call ``run_check`` for a single endpoint on demand.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Optional

import httpx
import structlog

from endpoint_monitoring.alerts.evaluator import AlertEvaluator
from endpoint_monitoring.alerts.throttle import AlertThrottle, ThrottleStore, build_throttle_store
from endpoint_monitoring.config import MonitoringConfig
from endpoint_monitoring.errors import ForbiddenError, MonitoringError, NotFoundError
from endpoint_monitoring.models import (
    AlertEvaluationContext,
    AlertTrigger,
    CheckResult,
    EndpointDefinition,
    OverallStats,
    UptimeStats,
)
from endpoint_monitoring.notifications.dispatcher import NotificationDispatcher
from endpoint_monitoring.plans import get_plan_limits
from endpoint_monitoring.probe import AdHocResponse, ProbeExecutor, send_request
from endpoint_monitoring.recorder import CheckRecorder
from endpoint_monitoring.storage import MonitoringStore


logger = structlog.get_logger(__name__)

DAY_SECONDS = 86400.0


def _window(days: float, now: float) -> tuple[float, float]:
    return now - float(days) * DAY_SECONDS, now


def percentage_change(current: float, previous: float) -> float:
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return ((current - previous) / previous) * 100.0


class MonitoringService:
    def __init__(
        self,
        store: MonitoringStore,
        *,
        config: MonitoringConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        probe: ProbeExecutor | None = None,
        dispatcher: NotificationDispatcher | None = None,
        throttle_store: ThrottleStore | None = None,
        evaluator: AlertEvaluator | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.config = config or MonitoringConfig()
        self.http_client = http_client
        self.clock = clock
        self.probe = probe or ProbeExecutor(self.config.probe, http_client=http_client)
        self.recorder = CheckRecorder(store)
        self.dispatcher = dispatcher or NotificationDispatcher(
            store,
            settings=self.config.notifications,
            email_settings=self.config.email,
            http_client=http_client,
        )
        if throttle_store is None:
            throttle_store = build_throttle_store(store, self.config.alerts)
        self.evaluator = evaluator or AlertEvaluator(
            store,
            self.dispatcher,
            throttle=AlertThrottle(throttle_store, clock=clock),
            config=self.config.alerts,
            clock=clock,
        )

    # --- Check pipeline ------------------------------------------------
    # Store calls go through asyncio.to_thread; sqlite lock waits must not
    # block the loop shared with overlapping ticks and the API.

    async def check_endpoint(self, endpoint: EndpointDefinition) -> CheckResult:
        """Probe, persist, then evaluate alerts for one endpoint."""
        outcome = await self.probe.probe(endpoint)
        result = await asyncio.to_thread(self.recorder.record, endpoint, outcome)
        logger.info(
            "Check completed",
            endpoint_id=endpoint.id,
            endpoint_name=endpoint.name,
            status=result.status.value,
            status_code=result.status_code,
            response_time_ms=result.response_time_ms,
        )

        ctx = AlertEvaluationContext(
            endpoint_id=endpoint.id,
            status=result.status,
            response_time_ms=result.response_time_ms,
            status_code=result.status_code,
            error_message=result.error_message,
        )
        try:
            await self.evaluator.evaluate_alerts(ctx, endpoint=endpoint)
        except Exception as exc:
            # The check row is already stored; alerting trouble must not hide it.
            logger.error("Alert evaluation failed", endpoint_id=endpoint.id, error=str(exc))

        if self.config.alerts.notify_on_failure:
            try:
                await self.evaluator.notify_failure(ctx, endpoint)
            except Exception as exc:
                logger.error("Failure alert failed", endpoint_id=endpoint.id, error=str(exc))
        return result

    async def run_check(self, endpoint_id: str, organization_id: Optional[str] = None) -> CheckResult:
        if organization_id is not None:
            endpoint = await asyncio.to_thread(self.store.get_endpoint, endpoint_id, organization_id)
            if endpoint is None:
                raise ForbiddenError("Endpoint not found or access denied")
        else:
            endpoint = await asyncio.to_thread(self.store.get_endpoint_internal, endpoint_id)
            if endpoint is None:
                raise NotFoundError("ApiEndpoint", endpoint_id)
        return await self.check_endpoint(endpoint)

    async def run_active_checks(self) -> dict[str, int]:
        endpoints = await asyncio.to_thread(self.store.list_active_endpoints)
        logger.info("Running active checks", endpoint_count=len(endpoints))
        completed = 0
        failed = 0
        for endpoint in endpoints:
            try:
                await self.check_endpoint(endpoint)
                completed += 1
            except Exception as exc:
                failed += 1
                logger.error("Endpoint check cycle failed", endpoint_id=endpoint.id, error=str(exc))
        logger.info("Active checks finished", completed=completed, failed=failed)
        return {"total": len(endpoints), "completed": completed, "failed": failed}

    async def send_request(
        self,
        *,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        body: Optional[str] = None,
    ) -> AdHocResponse:
        return await send_request(
            method=method,
            url=url,
            headers=headers,
            body=body,
            timeout_seconds=self.config.probe.adhoc_timeout_seconds,
            http_client=self.http_client,
        )

    # --- Retention -----------------------------------------------------

    def delete_old_checks(self) -> int:
        retention = self.config.retention
        now = self.clock()
        if not retention.per_plan:
            deleted = self.store.delete_checks_before(now - retention.default_days * DAY_SECONDS)
            logger.info("Old checks deleted", deleted=deleted, retention_days=retention.default_days)
            return deleted

        plans = self.store.list_organization_plans()
        deleted = 0
        for organization_id, plan in plans.items():
            try:
                days = get_plan_limits(plan).retention_days
            except MonitoringError:
                logger.warning("Unknown plan on organization", organization_id=organization_id, plan=plan)
                days = retention.default_days
            deleted += self.store.delete_checks_before(now - days * DAY_SECONDS, organization_id=organization_id)

        deleted += self.store.delete_checks_before(
            now - retention.default_days * DAY_SECONDS,
            exclude_organization_ids=list(plans.keys()),
        )
        logger.info("Old checks deleted", deleted=deleted, organizations_with_plan=len(plans))
        return deleted

    def purge_throttle_entries(self) -> int:
        purged = self.evaluator.throttle.purge()
        logger.info("Expired throttle entries purged", purged=purged)
        return purged

    # --- Statistics ----------------------------------------------------

    def get_uptime_stats(self, endpoint_id: str, from_ts: float, to_ts: float) -> UptimeStats:
        return self.store.uptime_stats(endpoint_id, from_ts, to_ts)

    def get_overall_stats(self, scope_id: str, from_ts: float, to_ts: float, *, scope: str = "user") -> OverallStats:
        return self.store.overall_stats(scope, scope_id, from_ts, to_ts)

    def get_visible_overall_stats(
        self,
        scope_id: str,
        from_ts: float,
        to_ts: float,
        *,
        scope: str,
        organization_id: str,
        user_id: str,
    ) -> OverallStats:
        """Overall stats, limited to scopes the caller's organization owns.

        A user scope is only readable by that user; an endpoint scope must
        belong to the organization.
        """
        if scope == "organization" and scope_id != organization_id:
            raise ForbiddenError("Organization not accessible")
        if scope == "user" and scope_id != user_id:
            raise ForbiddenError("User stats not accessible")
        if scope == "endpoint":
            self._visible_endpoint(scope_id, organization_id)
        return self.store.overall_stats(scope, scope_id, from_ts, to_ts)

    def _visible_endpoint(self, endpoint_id: str, organization_id: str) -> EndpointDefinition:
        endpoint = self.store.get_endpoint(endpoint_id, organization_id)
        if endpoint is None:
            raise ForbiddenError("Endpoint not found or access denied")
        return endpoint

    def get_endpoint_uptime(self, endpoint_id: str, organization_id: str, days: float = 30) -> UptimeStats:
        self._visible_endpoint(endpoint_id, organization_id)
        return self.store.uptime_stats(endpoint_id, *_window(days, self.clock()))

    def get_average_response_time(self, endpoint_id: str, organization_id: str, days: float = 30) -> float:
        self._visible_endpoint(endpoint_id, organization_id)
        return self.store.average_response_time(endpoint_id, *_window(days, self.clock()))

    def get_monitoring_history(
        self,
        endpoint_id: str,
        organization_id: str,
        *,
        skip: int = 0,
        take: int = 50,
    ) -> list[CheckResult]:
        self._visible_endpoint(endpoint_id, organization_id)
        return self.store.list_checks(endpoint_id, skip=skip, take=take)

    def get_response_time_history(self, scope: str, scope_id: str, days: float = 7) -> list[dict[str, Any]]:
        return self.store.response_time_history(scope, scope_id, *_window(days, self.clock()))

    def get_uptime_history(self, organization_id: str, days: float = 7) -> list[dict[str, Any]]:
        return self.store.uptime_history(organization_id, *_window(days, self.clock()))

    def get_top_endpoints(self, organization_id: str, days: float = 7, limit: int = 5) -> list[dict[str, Any]]:
        return self.store.top_endpoints(organization_id, *_window(days, self.clock()), limit=limit)

    def get_recent_failures(self, organization_id: str, limit: int = 50) -> list[dict[str, Any]]:
        return self.store.recent_failures(organization_id, limit=limit)

    def get_analytics(self, scope_id: str, days: float = 7, *, scope: str = "user") -> dict[str, Any]:
        """Current window against the previous window of the same length."""
        from_ts, to_ts = _window(days, self.clock())
        prev_from = from_ts - float(days) * DAY_SECONDS
        current = self.store.overall_stats(scope, scope_id, from_ts, to_ts)
        previous = self.store.overall_stats(scope, scope_id, prev_from, from_ts)
        return {
            "current": current.as_dict(),
            "previous": previous.as_dict(),
            "changes": {
                "totalChecks": percentage_change(current.total_checks, previous.total_checks),
                "avgResponseTime": percentage_change(current.avg_response_time, previous.avg_response_time),
                "errorRate": percentage_change(current.error_rate, previous.error_rate),
                "uptimePercentage": percentage_change(current.uptime_percentage, previous.uptime_percentage),
            },
        }

    def get_alert_trigger_history(self, alert_id: str, limit: int = 50) -> list[AlertTrigger]:
        if self.store.get_alert_rule(alert_id) is None:
            raise NotFoundError("Alert", alert_id)
        return self.store.list_alert_triggers(alert_id, limit=max(1, min(100, int(limit))))
