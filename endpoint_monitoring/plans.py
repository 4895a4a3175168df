from __future__ import annotations

from dataclasses import dataclass

from endpoint_monitoring.errors import BadRequestError, PlanLimitError
from endpoint_monitoring.models import PlanType


UNLIMITED = -1


@dataclass(frozen=True)
class RateLimits:
    requests_per_minute: int
    requests_per_hour: int


@dataclass(frozen=True)
class PlanLimits:
    max_endpoints: int
    max_checks_per_month: int
    min_check_interval_ms: int
    max_alerts: int
    max_team_members: int
    retention_days: int
    rate_limit: RateLimits


PLAN_LIMITS: dict[PlanType, PlanLimits] = {
    PlanType.FREE: PlanLimits(
        max_endpoints=5,
        max_checks_per_month=10_000,
        min_check_interval_ms=300_000,
        max_alerts=3,
        max_team_members=1,
        retention_days=7,
        rate_limit=RateLimits(requests_per_minute=10, requests_per_hour=100),
    ),
    PlanType.STARTER: PlanLimits(
        max_endpoints=25,
        max_checks_per_month=100_000,
        min_check_interval_ms=60_000,
        max_alerts=10,
        max_team_members=3,
        retention_days=30,
        rate_limit=RateLimits(requests_per_minute=30, requests_per_hour=500),
    ),
    PlanType.PRO: PlanLimits(
        max_endpoints=100,
        max_checks_per_month=1_000_000,
        min_check_interval_ms=30_000,
        max_alerts=50,
        max_team_members=10,
        retention_days=90,
        rate_limit=RateLimits(requests_per_minute=100, requests_per_hour=2000),
    ),
    PlanType.ENTERPRISE: PlanLimits(
        max_endpoints=UNLIMITED,
        max_checks_per_month=UNLIMITED,
        min_check_interval_ms=10_000,
        max_alerts=UNLIMITED,
        max_team_members=UNLIMITED,
        retention_days=365,
        rate_limit=RateLimits(requests_per_minute=1000, requests_per_hour=20000),
    ),
}


def is_unlimited(value: int) -> bool:
    return value == UNLIMITED


def coerce_plan(plan: PlanType | str | None) -> PlanType:
    """Missing plan means FREE; an unrecognised name is a caller error."""
    if plan is None or plan == "":
        return PlanType.FREE
    if isinstance(plan, PlanType):
        return plan
    try:
        return PlanType(str(plan).strip().upper())
    except ValueError as exc:
        raise BadRequestError(f"Unknown plan tier: {plan}") from exc


def get_plan_limits(plan: PlanType | str | None) -> PlanLimits:
    return PLAN_LIMITS[coerce_plan(plan)]


def validate_check_interval(plan: PlanType | str | None, interval_ms: int) -> None:
    tier = coerce_plan(plan)
    limits = PLAN_LIMITS[tier]
    if int(interval_ms) < limits.min_check_interval_ms:
        min_seconds = limits.min_check_interval_ms // 1000
        raise PlanLimitError(
            f"{tier.value} plan requires a minimum check interval of {min_seconds} seconds. "
            "Upgrade your plan for more frequent checks."
        )


def validate_endpoint_count(plan: PlanType | str | None, active_endpoints: int) -> None:
    """Reject adding one more active endpoint when the tier is already full."""
    tier = coerce_plan(plan)
    limits = PLAN_LIMITS[tier]
    if not is_unlimited(limits.max_endpoints) and active_endpoints >= limits.max_endpoints:
        raise PlanLimitError(
            f"Plan limit reached. {tier.value} plan allows maximum {limits.max_endpoints} active endpoints. "
            "Upgrade your plan to add more."
        )


def validate_alert_count(plan: PlanType | str | None, current_alerts: int) -> None:
    tier = coerce_plan(plan)
    limits = PLAN_LIMITS[tier]
    if not is_unlimited(limits.max_alerts) and current_alerts >= limits.max_alerts:
        raise PlanLimitError(
            f"Plan limit reached. {tier.value} plan allows maximum {limits.max_alerts} active monitors/alerts. "
            "Upgrade your plan to add more."
        )
