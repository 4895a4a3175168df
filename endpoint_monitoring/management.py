"""Configuration-time writes for endpoints, alert rules and channels.

Everything here validates synchronously and raises ``MonitoringError``
subclasses; the check pipeline never goes through this module.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog

from endpoint_monitoring.errors import BadRequestError, ForbiddenError, NotFoundError
from endpoint_monitoring.models import (
    HTTP_METHODS,
    AlertCondition,
    AlertRule,
    ChannelType,
    EndpointDefinition,
    NotificationChannel,
    PlanType,
)
from endpoint_monitoring.notifications.channels import coerce_channel_type, parse_channel_config
from endpoint_monitoring.plans import coerce_plan, validate_alert_count, validate_check_interval, validate_endpoint_count
from endpoint_monitoring.storage import MonitoringStore


logger = structlog.get_logger(__name__)

_UNSET: Any = object()

_ENDPOINT_FIELDS = frozenset(
    {"name", "url", "method", "headers", "body", "expected_status", "timeout_ms", "interval_ms", "is_active"}
)


def _require_text(value: Optional[str], field: str) -> str:
    v = str(value or "").strip()
    if not v:
        raise BadRequestError(f"{field} is required")
    return v


def _require_url(value: Optional[str]) -> str:
    v = _require_text(value, "url")
    try:
        parsed = httpx.URL(v)
    except Exception as exc:
        raise BadRequestError(f"Invalid URL: {v}") from exc
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise BadRequestError(f"Invalid URL: {v}")
    return v


def _require_method(value: Optional[str]) -> str:
    v = str(value or "GET").strip().upper()
    if v not in HTTP_METHODS:
        raise BadRequestError(f"Unsupported HTTP method: {value}")
    return v


def _require_positive(value: Any, field: str) -> Any:
    try:
        ok = value is not None and float(value) > 0
    except (TypeError, ValueError):
        ok = False
    if not ok:
        raise BadRequestError(f"{field} must be greater than 0")
    return value


class ConfigurationService:
    def __init__(self, store: MonitoringStore) -> None:
        self.store = store

    def _plan_for(self, organization_id: str, plan: Optional[PlanType | str]) -> PlanType:
        if plan is not None:
            return coerce_plan(plan)
        return coerce_plan(self.store.get_organization_plan(organization_id))

    def set_organization_plan(self, organization_id: str, plan: PlanType | str) -> PlanType:
        tier = coerce_plan(plan)
        self.store.set_organization_plan(_require_text(organization_id, "organization_id"), tier.value)
        return tier

    # --- Endpoints -----------------------------------------------------

    def create_endpoint(
        self,
        *,
        organization_id: str,
        user_id: str,
        name: str,
        url: str,
        method: str = "GET",
        headers: Optional[dict[str, str]] = None,
        body: Optional[str] = None,
        expected_status: int = 200,
        timeout_ms: int = 30_000,
        interval_ms: int = 300_000,
        is_active: bool = True,
        plan: Optional[PlanType | str] = None,
    ) -> EndpointDefinition:
        tier = self._plan_for(organization_id, plan)
        name = _require_text(name, "name")
        url = _require_url(url)
        method = _require_method(method)
        _require_positive(timeout_ms, "timeout")
        _require_positive(interval_ms, "interval")
        if is_active:
            validate_check_interval(tier, interval_ms)
            validate_endpoint_count(tier, self.store.count_active_endpoints(organization_id))

        endpoint = self.store.insert_endpoint(
            user_id=_require_text(user_id, "user_id"),
            organization_id=organization_id,
            name=name,
            url=url,
            method=method,
            headers=dict(headers or {}),
            body=body,
            expected_status=int(expected_status),
            timeout_ms=int(timeout_ms),
            interval_ms=int(interval_ms),
            is_active=is_active,
        )
        logger.info("Endpoint created", endpoint_id=endpoint.id, organization_id=organization_id, plan=tier.value)
        return endpoint

    def update_endpoint(
        self,
        endpoint_id: str,
        organization_id: str,
        *,
        plan: Optional[PlanType | str] = None,
        **changes: Any,
    ) -> EndpointDefinition:
        existing = self.store.get_endpoint(endpoint_id, organization_id)
        if existing is None:
            raise NotFoundError("ApiEndpoint", endpoint_id)
        tier = self._plan_for(organization_id, plan)

        unknown = sorted(set(changes) - _ENDPOINT_FIELDS)
        if unknown:
            raise BadRequestError(f"Unsupported endpoint field: {unknown[0]}")

        patch: dict[str, Any] = {}
        for key, value in changes.items():
            if value is None and key != "body":
                continue
            if key == "name":
                value = _require_text(value, "name")
            elif key == "url":
                value = _require_url(value)
            elif key == "method":
                value = _require_method(value)
            elif key in ("timeout_ms", "interval_ms"):
                _require_positive(value, "timeout" if key == "timeout_ms" else "interval")
                value = int(value)
            elif key == "expected_status":
                value = int(value)
            patch[key] = value

        will_be_active = bool(patch.get("is_active", existing.is_active))
        interval = int(patch.get("interval_ms", existing.interval_ms))
        if will_be_active and ("interval_ms" in patch or not existing.is_active):
            validate_check_interval(tier, interval)
        if will_be_active and not existing.is_active:
            validate_endpoint_count(tier, self.store.count_active_endpoints(organization_id))

        updated = self.store.update_endpoint(endpoint_id, patch)
        if updated is None:
            raise NotFoundError("ApiEndpoint", endpoint_id)
        logger.info("Endpoint updated", endpoint_id=endpoint_id, fields=sorted(patch))
        return updated

    # --- Alert rules ---------------------------------------------------

    def create_alert_rule(
        self,
        *,
        organization_id: str,
        user_id: str,
        endpoint_id: str,
        name: str,
        condition: AlertCondition | str,
        threshold: float,
        description: Optional[str] = None,
        plan: Optional[PlanType | str] = None,
    ) -> AlertRule:
        endpoint = self.store.get_endpoint(endpoint_id, organization_id)
        if endpoint is None:
            raise ForbiddenError("Endpoint not found or access denied")
        tier = self._plan_for(organization_id, plan)
        condition_value = self._coerce_condition(condition)
        _require_positive(threshold, "threshold")
        validate_alert_count(tier, self.store.count_alert_rules(organization_id))

        rule = self.store.insert_alert_rule(
            endpoint_id=endpoint.id,
            user_id=_require_text(user_id, "user_id"),
            name=_require_text(name, "name"),
            condition=condition_value,
            threshold=float(threshold),
            description=description,
        )
        logger.info("Alert rule created", alert_id=rule.id, endpoint_id=endpoint.id, condition=condition_value)
        return rule

    def update_alert_rule(
        self,
        alert_id: str,
        organization_id: str,
        *,
        name: Optional[str] = None,
        condition: Optional[AlertCondition | str] = None,
        threshold: Optional[float] = None,
        description: Any = _UNSET,
        is_active: Optional[bool] = None,
    ) -> AlertRule:
        rule = self.store.get_alert_rule(alert_id)
        if rule is None or self.store.get_endpoint(rule.endpoint_id, organization_id) is None:
            raise NotFoundError("Alert", alert_id)

        patch: dict[str, Any] = {}
        if name is not None:
            patch["name"] = _require_text(name, "name")
        if condition is not None:
            patch["condition"] = self._coerce_condition(condition)
        if threshold is not None:
            patch["threshold"] = float(_require_positive(threshold, "threshold"))
        if description is not _UNSET:
            patch["description"] = description
        if is_active is not None:
            patch["is_active"] = bool(is_active)

        updated = self.store.update_alert_rule(alert_id, patch)
        if updated is None:
            raise NotFoundError("Alert", alert_id)
        return updated

    @staticmethod
    def _coerce_condition(condition: AlertCondition | str) -> str:
        try:
            return AlertCondition(str(getattr(condition, "value", condition)).strip().upper()).value
        except ValueError as exc:
            raise BadRequestError(f"Unknown alert condition: {condition}") from exc

    # --- Notification channels -----------------------------------------

    def create_channel(
        self,
        *,
        organization_id: str,
        name: str,
        channel_type: ChannelType | str,
        config: str | dict[str, Any],
    ) -> NotificationChannel:
        kind = coerce_channel_type(channel_type)
        typed = parse_channel_config(kind, config)
        channel = self.store.insert_channel(
            organization_id=_require_text(organization_id, "organization_id"),
            name=_require_text(name, "name"),
            channel_type=kind.value,
            config=typed.model_dump_json(by_alias=True, exclude_none=True),
        )
        logger.info("Notification channel created", channel_id=channel.id, channel_type=kind.value)
        return channel

    def update_channel(
        self,
        channel_id: str,
        organization_id: str,
        *,
        name: Optional[str] = None,
        config: Optional[str | dict[str, Any]] = None,
        is_active: Optional[bool] = None,
    ) -> NotificationChannel:
        existing = next(
            (c for c in self.store.list_channels(organization_id) if c.id == channel_id),
            None,
        )
        if existing is None:
            raise NotFoundError("NotificationChannel", channel_id)

        patch: dict[str, Any] = {}
        if name is not None:
            patch["name"] = _require_text(name, "name")
        if config is not None:
            typed = parse_channel_config(existing.type, config)
            patch["config"] = typed.model_dump_json(by_alias=True, exclude_none=True)
        if is_active is not None:
            patch["is_active"] = bool(is_active)

        updated = self.store.update_channel(channel_id, organization_id, patch)
        if updated is None:
            raise NotFoundError("NotificationChannel", channel_id)
        return updated
