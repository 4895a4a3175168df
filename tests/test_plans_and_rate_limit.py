from __future__ import annotations

import pytest

from endpoint_monitoring.errors import BadRequestError, PlanLimitError, RateLimitError
from endpoint_monitoring.models import PlanType
from endpoint_monitoring.plans import (
    coerce_plan,
    get_plan_limits,
    validate_alert_count,
    validate_check_interval,
    validate_endpoint_count,
)
from endpoint_monitoring.rate_limit import RateLimiter


class _Clock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def test_missing_plan_defaults_to_free() -> None:
    assert coerce_plan(None) is PlanType.FREE
    assert coerce_plan("pro") is PlanType.PRO
    with pytest.raises(BadRequestError):
        coerce_plan("platinum")


def test_interval_below_tier_minimum_names_tier_and_seconds() -> None:
    validate_check_interval("FREE", 300_000)
    with pytest.raises(PlanLimitError, match="FREE plan requires a minimum check interval of 300 seconds"):
        validate_check_interval("FREE", 60_000)
    validate_check_interval(PlanType.ENTERPRISE, 10_000)


def test_endpoint_and_alert_counts() -> None:
    validate_endpoint_count("FREE", 4)
    with pytest.raises(PlanLimitError, match="maximum 5 active endpoints"):
        validate_endpoint_count("FREE", 5)
    with pytest.raises(PlanLimitError, match="maximum 3 active monitors/alerts"):
        validate_alert_count("FREE", 3)


def test_enterprise_counts_are_unlimited() -> None:
    validate_endpoint_count("ENTERPRISE", 1_000_000)
    validate_alert_count("ENTERPRISE", 1_000_000)
    assert get_plan_limits("ENTERPRISE").retention_days == 365


def test_rate_limiter_minute_window_and_reset() -> None:
    clock = _Clock()
    limiter = RateLimiter(clock=clock)
    for _ in range(10):
        limiter.check("user-1", "FREE")

    with pytest.raises(RateLimitError) as excinfo:
        limiter.check("user-1", "FREE")
    assert excinfo.value.retry_after_seconds == 60
    assert excinfo.value.status_code == 429

    # Other users have their own windows.
    limiter.check("user-2", "FREE")

    clock.now += 61
    limiter.check("user-1", "FREE")
    assert limiter.get_rate_limit_info("user-1", "FREE")["minute"]["remaining"] == 9


def test_rate_limiter_hour_window() -> None:
    clock = _Clock()
    limiter = RateLimiter(clock=clock)
    for _ in range(10):
        for _ in range(10):
            limiter.check("user-1", "FREE")
        clock.now += 61

    with pytest.raises(RateLimitError, match="Hourly rate limit exceeded"):
        limiter.check("user-1", "FREE")


def test_rate_limiter_prune_drops_expired_users() -> None:
    clock = _Clock()
    limiter = RateLimiter(clock=clock)
    limiter.check("user-1", "PRO")
    assert limiter.prune() == 0
    clock.now += 3601
    assert limiter.prune() == 1


def test_rate_limiter_drops_idle_users_while_serving_others() -> None:
    clock = _Clock()
    limiter = RateLimiter(clock=clock)
    for n in range(50):
        limiter.check(f"burst-{n}", "FREE")
    assert limiter.tracked_users == 50

    clock.now += 3601
    limiter.check("steady", "FREE")
    assert limiter.tracked_users == 1
    assert limiter.get_rate_limit_info("burst-0", "FREE")["minute"]["remaining"] == 10
