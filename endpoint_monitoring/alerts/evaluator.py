"""Alert rule evaluation, trigger recording and notification hand-off."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable

import structlog

from endpoint_monitoring.alerts.throttle import AlertThrottle
from endpoint_monitoring.config import AlertsConfig
from endpoint_monitoring.models import (
    AlertCondition,
    AlertEvaluationContext,
    AlertRule,
    CheckStatus,
    EndpointDefinition,
)
from endpoint_monitoring.notifications.dispatcher import DispatchSummary, NotificationDispatcher
from endpoint_monitoring.notifications.payload import AlertNotification
from endpoint_monitoring.storage import MonitoringStore


logger = structlog.get_logger(__name__)

FAILURE_ALERT_NAME = "Endpoint failure"


@dataclass(frozen=True)
class RuleDecision:
    alert_id: str
    triggered: bool
    throttled: bool = False
    summary: DispatchSummary | None = None
    error: str | None = None


def trigger_value(rule: AlertRule, ctx: AlertEvaluationContext) -> float:
    """Value stored on the trigger row.

    Percentage conditions are computed from aggregates, not from the check
    itself, so they store 0.
    """
    if rule.condition in (AlertCondition.RESPONSE_TIME_ABOVE.value, AlertCondition.RESPONSE_TIME_BELOW.value):
        return float(ctx.response_time_ms or 0)
    if rule.condition == AlertCondition.STATUS_CODE_NOT.value:
        return float(ctx.status_code or 0)
    return 0.0


def failure_throttle_key(endpoint_id: str) -> str:
    return f"endpoint:{endpoint_id}"


class AlertEvaluator:
    """Evaluates an endpoint's active rules against one finished check.

    Store and throttle calls run in worker threads so a locked database
    never stalls the event loop.
    """

    def __init__(
        self,
        store: MonitoringStore,
        dispatcher: NotificationDispatcher,
        *,
        throttle: AlertThrottle | None = None,
        config: AlertsConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.config = config or AlertsConfig()
        self.clock = clock
        self.throttle = throttle or AlertThrottle(clock=clock)

    async def evaluate_alerts(
        self,
        ctx: AlertEvaluationContext,
        *,
        endpoint: EndpointDefinition | None = None,
    ) -> list[RuleDecision]:
        rules = await asyncio.to_thread(self.store.list_active_alert_rules, ctx.endpoint_id)
        if not rules:
            return []

        if endpoint is None:
            endpoint = await asyncio.to_thread(self.store.get_endpoint_internal, ctx.endpoint_id)
        if endpoint is None:
            logger.warning("Alert evaluation skipped, endpoint missing", endpoint_id=ctx.endpoint_id)
            return []

        decisions: list[RuleDecision] = []
        for rule in rules:
            try:
                if not await asyncio.to_thread(self.check_condition, rule, ctx, endpoint):
                    decisions.append(RuleDecision(alert_id=rule.id, triggered=False))
                    continue
                decisions.append(await self.trigger_alert(rule, ctx, endpoint))
            except Exception as exc:
                logger.error(
                    "Alert rule evaluation failed",
                    alert_id=rule.id,
                    alert_name=rule.name,
                    endpoint_id=ctx.endpoint_id,
                    error=str(exc),
                )
        return decisions

    def check_condition(self, rule: AlertRule, ctx: AlertEvaluationContext, endpoint: EndpointDefinition) -> bool:
        condition = rule.condition
        threshold = float(rule.threshold)

        if condition == AlertCondition.RESPONSE_TIME_ABOVE.value:
            return ctx.response_time_ms is not None and ctx.response_time_ms > threshold
        if condition == AlertCondition.RESPONSE_TIME_BELOW.value:
            return ctx.response_time_ms is not None and ctx.response_time_ms < threshold
        if condition == AlertCondition.STATUS_CODE_NOT.value:
            return ctx.status_code is not None and ctx.status_code != threshold

        now = self.clock()
        since = now - self.config.aggregate_window_hours * 3600.0
        if condition == AlertCondition.UPTIME_BELOW.value:
            stats = self.store.uptime_stats(endpoint.id, since, now)
            return stats.uptime_percentage < threshold
        if condition == AlertCondition.ERROR_RATE_ABOVE.value:
            scope = self.config.error_rate_scope
            if scope == "organization" and endpoint.organization_id:
                scope_id = endpoint.organization_id
            elif scope == "endpoint":
                scope_id = endpoint.id
            else:
                scope, scope_id = "user", endpoint.user_id
            stats = self.store.overall_stats(scope, scope_id, since, now)
            return stats.error_rate > threshold

        logger.warning("Unknown alert condition", alert_id=rule.id, condition=condition)
        return False

    def _record_trigger(self, rule_id: str, value: float, now: float, *, stamp: bool) -> None:
        self.store.insert_alert_trigger(rule_id, value, triggered_at_ts=now)
        if stamp:
            self.store.stamp_last_triggered(rule_id, now)

    async def trigger_alert(
        self,
        rule: AlertRule,
        ctx: AlertEvaluationContext,
        endpoint: EndpointDefinition,
    ) -> RuleDecision:
        value = trigger_value(rule, ctx)
        if not await asyncio.to_thread(self.throttle.should_notify, rule.id):
            logger.info("Alert throttled", alert_id=rule.id, alert_name=rule.name, endpoint_id=endpoint.id)
            if self.config.record_suppressed_triggers:
                await asyncio.to_thread(self._record_trigger, rule.id, value, self.clock(), stamp=False)
            return RuleDecision(alert_id=rule.id, triggered=True, throttled=True)

        now = self.clock()
        await asyncio.to_thread(self._record_trigger, rule.id, value, now, stamp=True)
        logger.info(
            "Alert triggered",
            alert_id=rule.id,
            alert_name=rule.name,
            condition=rule.condition,
            threshold=rule.threshold,
            value=value,
            endpoint_id=endpoint.id,
        )

        notification = AlertNotification(
            alert_id=rule.id,
            alert_name=rule.name,
            condition=rule.condition,
            threshold=float(rule.threshold),
            endpoint_name=endpoint.name,
            endpoint_url=endpoint.url,
            status=ctx.status.value,
            timestamp_ts=now,
            status_code=ctx.status_code,
            error_message=ctx.error_message,
            response_time_ms=ctx.response_time_ms,
        )
        summary, error = await self._dispatch(rule.id, endpoint, notification)
        return RuleDecision(alert_id=rule.id, triggered=True, summary=summary, error=error)

    async def notify_failure(self, ctx: AlertEvaluationContext, endpoint: EndpointDefinition) -> RuleDecision | None:
        """Direct notification for a non-SUCCESS check, independent of rules.

        Throttled per endpoint with the same one-hour cooldown as rules.
        Returns None when the check succeeded.
        """
        if ctx.status is CheckStatus.SUCCESS:
            return None
        key = failure_throttle_key(endpoint.id)
        if not await asyncio.to_thread(self.throttle.should_notify, key):
            logger.info("Failure alert throttled", endpoint_id=endpoint.id, endpoint_name=endpoint.name)
            return RuleDecision(alert_id=key, triggered=True, throttled=True)

        notification = AlertNotification(
            alert_id=key,
            alert_name=FAILURE_ALERT_NAME,
            condition=ctx.status.value,
            threshold=0.0,
            endpoint_name=endpoint.name,
            endpoint_url=endpoint.url,
            status=ctx.status.value,
            timestamp_ts=self.clock(),
            status_code=ctx.status_code,
            error_message=ctx.error_message,
            response_time_ms=ctx.response_time_ms,
        )
        summary, error = await self._dispatch(key, endpoint, notification)
        logger.info(
            "Failure alert sent",
            endpoint_id=endpoint.id,
            organization_id=endpoint.organization_id,
            status=ctx.status.value,
        )
        return RuleDecision(alert_id=key, triggered=True, summary=summary, error=error)

    async def _dispatch(
        self,
        throttle_key: str,
        endpoint: EndpointDefinition,
        notification: AlertNotification,
    ) -> tuple[DispatchSummary | None, str | None]:
        summary: DispatchSummary | None = DispatchSummary(total=0, success=0, failed=0)
        error: str | None = None
        try:
            if endpoint.organization_id:
                summary = await self.dispatcher.send_notifications(endpoint.organization_id, notification)
            else:
                logger.info("Endpoint has no organization, nothing to notify", endpoint_id=endpoint.id)
        except Exception as exc:
            summary, error = None, str(exc)
            logger.error(
                "Notification dispatch failed",
                alert_id=notification.alert_id,
                endpoint_id=endpoint.id,
                error=error,
                error_type=type(exc).__name__,
            )
        # Cooldown starts once a dispatch was attempted, delivered or not.
        await asyncio.to_thread(self.throttle.mark_notified, throttle_key)
        return summary, error
