from __future__ import annotations

import time

import pytest

from endpoint_monitoring.alerts.evaluator import AlertEvaluator
from endpoint_monitoring.alerts.throttle import AlertThrottle
from endpoint_monitoring.config import AlertsConfig
from endpoint_monitoring.models import AlertEvaluationContext, CheckStatus, ProbeOutcome
from endpoint_monitoring.notifications.dispatcher import DispatchSummary
from endpoint_monitoring.storage import MonitoringStore


class _RecordingDispatcher:
    def __init__(self) -> None:
        self.calls: list[tuple[str, object]] = []

    async def send_notifications(self, organization_id: str, notification) -> DispatchSummary:
        self.calls.append((organization_id, notification))
        return DispatchSummary(total=1, success=1, failed=0)


class _Clock:
    def __init__(self, start: float) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def _setup(store: MonitoringStore, condition: str, threshold: float, *, config: AlertsConfig | None = None):
    endpoint = store.insert_endpoint(
        user_id="user-1", organization_id="org-1", name="Payments", url="https://pay.example.test/health"
    )
    rule = store.insert_alert_rule(
        endpoint_id=endpoint.id, user_id="user-1", name=f"{condition} rule", condition=condition, threshold=threshold
    )
    dispatcher = _RecordingDispatcher()
    clock = _Clock(time.time())
    evaluator = AlertEvaluator(
        store,
        dispatcher,  # type: ignore[arg-type]
        throttle=AlertThrottle(clock=clock),
        config=config,
        clock=clock,
    )
    return endpoint, rule, dispatcher, evaluator, clock


def _ctx(endpoint_id: str, **kwargs) -> AlertEvaluationContext:
    kwargs.setdefault("status", CheckStatus.SUCCESS)
    return AlertEvaluationContext(endpoint_id=endpoint_id, **kwargs)


@pytest.mark.asyncio
async def test_no_active_rules_is_a_noop(store: MonitoringStore) -> None:
    endpoint = store.insert_endpoint(user_id="u", organization_id="o", name="n", url="https://x.example.test/")
    dispatcher = _RecordingDispatcher()
    evaluator = AlertEvaluator(store, dispatcher)  # type: ignore[arg-type]

    decisions = await evaluator.evaluate_alerts(_ctx(endpoint.id, response_time_ms=99999.0))
    assert decisions == []
    assert dispatcher.calls == []


@pytest.mark.asyncio
async def test_response_time_above_threshold(store: MonitoringStore) -> None:
    endpoint, rule, dispatcher, evaluator, _clock = _setup(store, "RESPONSE_TIME_ABOVE", 1000)

    decisions = await evaluator.evaluate_alerts(_ctx(endpoint.id, response_time_ms=500.0))
    assert [d.triggered for d in decisions] == [False]
    assert dispatcher.calls == []

    decisions = await evaluator.evaluate_alerts(_ctx(endpoint.id, response_time_ms=2000.0))
    assert [d.triggered for d in decisions] == [True]
    assert len(dispatcher.calls) == 1
    org, notification = dispatcher.calls[0]
    assert org == "org-1"
    assert notification.endpoint_name == "Payments"
    assert notification.response_time_ms == 2000.0

    triggers = store.list_alert_triggers(rule.id)
    assert [t.value for t in triggers] == [2000.0]
    assert store.get_alert_rule(rule.id).last_triggered_ts is not None


@pytest.mark.asyncio
async def test_response_time_below_threshold(store: MonitoringStore) -> None:
    endpoint, _rule, dispatcher, evaluator, _clock = _setup(store, "RESPONSE_TIME_BELOW", 50)
    await evaluator.evaluate_alerts(_ctx(endpoint.id, response_time_ms=None))
    assert dispatcher.calls == []
    await evaluator.evaluate_alerts(_ctx(endpoint.id, response_time_ms=10.0))
    assert len(dispatcher.calls) == 1


@pytest.mark.asyncio
async def test_status_code_not(store: MonitoringStore) -> None:
    endpoint, rule, dispatcher, evaluator, _clock = _setup(store, "STATUS_CODE_NOT", 200)

    await evaluator.evaluate_alerts(_ctx(endpoint.id, status_code=200))
    assert dispatcher.calls == []

    await evaluator.evaluate_alerts(_ctx(endpoint.id, status=CheckStatus.FAILURE, status_code=500))
    assert len(dispatcher.calls) == 1
    assert dispatcher.calls[0][1].status == "FAILURE"
    assert [t.value for t in store.list_alert_triggers(rule.id)] == [500.0]


@pytest.mark.asyncio
async def test_uptime_below_uses_trailing_window_and_records_zero(store: MonitoringStore) -> None:
    endpoint, rule, dispatcher, evaluator, clock = _setup(store, "UPTIME_BELOW", 90)
    store.insert_check_result(endpoint, ProbeOutcome(status=CheckStatus.SUCCESS), checked_at_ts=clock.now - 60)
    store.insert_check_result(endpoint, ProbeOutcome(status=CheckStatus.ERROR), checked_at_ts=clock.now - 30)

    await evaluator.evaluate_alerts(_ctx(endpoint.id, status=CheckStatus.ERROR))
    assert len(dispatcher.calls) == 1
    assert [t.value for t in store.list_alert_triggers(rule.id)] == [0.0]


@pytest.mark.asyncio
async def test_error_rate_above_spans_the_owning_user(store: MonitoringStore) -> None:
    endpoint, _rule, dispatcher, evaluator, clock = _setup(store, "ERROR_RATE_ABOVE", 40)
    sibling = store.insert_endpoint(user_id="user-1", organization_id="org-1", name="Other", url="https://o.example.test/")
    store.insert_check_result(endpoint, ProbeOutcome(status=CheckStatus.SUCCESS), checked_at_ts=clock.now - 10)
    store.insert_check_result(sibling, ProbeOutcome(status=CheckStatus.FAILURE), checked_at_ts=clock.now - 10)
    store.insert_check_result(sibling, ProbeOutcome(status=CheckStatus.FAILURE), checked_at_ts=clock.now - 10)

    # Only the sibling failed, but the user-wide error rate is 66%.
    await evaluator.evaluate_alerts(_ctx(endpoint.id))
    assert len(dispatcher.calls) == 1


@pytest.mark.asyncio
async def test_error_rate_can_be_scoped_to_the_endpoint(store: MonitoringStore) -> None:
    endpoint, _rule, dispatcher, evaluator, clock = _setup(
        store, "ERROR_RATE_ABOVE", 40, config=AlertsConfig(error_rate_scope="endpoint")
    )
    sibling = store.insert_endpoint(user_id="user-1", organization_id="org-1", name="Other", url="https://o.example.test/")
    store.insert_check_result(endpoint, ProbeOutcome(status=CheckStatus.SUCCESS), checked_at_ts=clock.now - 10)
    store.insert_check_result(sibling, ProbeOutcome(status=CheckStatus.FAILURE), checked_at_ts=clock.now - 10)

    await evaluator.evaluate_alerts(_ctx(endpoint.id))
    assert dispatcher.calls == []


@pytest.mark.asyncio
async def test_unknown_condition_never_triggers(store: MonitoringStore) -> None:
    endpoint, rule, dispatcher, evaluator, _clock = _setup(store, "BODY_CONTAINS", 1)
    decisions = await evaluator.evaluate_alerts(_ctx(endpoint.id, response_time_ms=1.0, status_code=500))
    assert [d.triggered for d in decisions] == [False]
    assert dispatcher.calls == []
    assert store.list_alert_triggers(rule.id) == []


@pytest.mark.asyncio
async def test_failing_rule_does_not_block_siblings(store: MonitoringStore, monkeypatch: pytest.MonkeyPatch) -> None:
    endpoint, bad_rule, dispatcher, evaluator, _clock = _setup(store, "RESPONSE_TIME_ABOVE", 1000)
    good_rule = store.insert_alert_rule(
        endpoint_id=endpoint.id, user_id="user-1", name="status", condition="STATUS_CODE_NOT", threshold=200
    )

    original = evaluator.check_condition

    def flaky(rule, ctx, ep):
        if rule.id == bad_rule.id:
            raise RuntimeError("aggregate query failed")
        return original(rule, ctx, ep)

    monkeypatch.setattr(evaluator, "check_condition", flaky)
    decisions = await evaluator.evaluate_alerts(_ctx(endpoint.id, response_time_ms=5000.0, status_code=503))

    assert [d.alert_id for d in decisions] == [good_rule.id]
    assert len(dispatcher.calls) == 1
    assert dispatcher.calls[0][1].alert_id == good_rule.id


@pytest.mark.asyncio
async def test_repeat_trigger_throttled_for_one_hour(store: MonitoringStore) -> None:
    endpoint, rule, dispatcher, evaluator, clock = _setup(store, "RESPONSE_TIME_ABOVE", 1000)
    slow = _ctx(endpoint.id, response_time_ms=2000.0)

    await evaluator.evaluate_alerts(slow)
    assert len(dispatcher.calls) == 1

    clock.now += 30 * 60
    decisions = await evaluator.evaluate_alerts(slow)
    assert decisions[0].throttled is True
    assert len(dispatcher.calls) == 1
    assert len(store.list_alert_triggers(rule.id)) == 1

    clock.now += 31 * 60
    await evaluator.evaluate_alerts(slow)
    assert len(dispatcher.calls) == 2
    assert len(store.list_alert_triggers(rule.id)) == 2


@pytest.mark.asyncio
async def test_suppressed_triggers_can_be_recorded(store: MonitoringStore) -> None:
    endpoint, rule, dispatcher, evaluator, clock = _setup(
        store, "RESPONSE_TIME_ABOVE", 1000, config=AlertsConfig(record_suppressed_triggers=True)
    )
    slow = _ctx(endpoint.id, response_time_ms=2000.0)

    await evaluator.evaluate_alerts(slow)
    clock.now += 60
    await evaluator.evaluate_alerts(slow)

    assert len(dispatcher.calls) == 1
    assert len(store.list_alert_triggers(rule.id)) == 2


@pytest.mark.asyncio
async def test_dispatch_failure_still_starts_cooldown(store: MonitoringStore) -> None:
    endpoint, rule, _dispatcher, _evaluator, clock = _setup(store, "RESPONSE_TIME_ABOVE", 1000)

    class _Exploding:
        calls = 0

        async def send_notifications(self, organization_id, notification):
            type(self).calls += 1
            raise RuntimeError("channel store unavailable")

    throttle = AlertThrottle(clock=clock)
    evaluator = AlertEvaluator(store, _Exploding(), throttle=throttle, clock=clock)  # type: ignore[arg-type]
    slow = _ctx(endpoint.id, response_time_ms=2000.0)

    decisions = await evaluator.evaluate_alerts(slow)
    assert len(decisions) == 1
    assert decisions[0].triggered is True
    assert decisions[0].summary is None
    assert decisions[0].error == "channel store unavailable"
    assert len(store.list_alert_triggers(rule.id)) == 1
    assert throttle.should_notify(rule.id) is False


@pytest.mark.asyncio
async def test_failure_notice_throttled_per_endpoint(store: MonitoringStore) -> None:
    endpoint = store.insert_endpoint(user_id="u", organization_id="org-1", name="Search", url="https://s.example.test/")
    other = store.insert_endpoint(user_id="u", organization_id="org-1", name="Login", url="https://l.example.test/")
    dispatcher = _RecordingDispatcher()
    clock = _Clock(time.time())
    evaluator = AlertEvaluator(store, dispatcher, throttle=AlertThrottle(clock=clock), clock=clock)  # type: ignore[arg-type]

    assert await evaluator.notify_failure(_ctx(endpoint.id), endpoint) is None

    down = _ctx(endpoint.id, status=CheckStatus.TIMEOUT, error_message="Request timeout after 5000ms")
    first = await evaluator.notify_failure(down, endpoint)
    assert first is not None and first.throttled is False
    org, notification = dispatcher.calls[0]
    assert org == "org-1"
    assert notification.endpoint_name == "Search"
    assert notification.status == "TIMEOUT"

    clock.now += 600
    again = await evaluator.notify_failure(down, endpoint)
    assert again is not None and again.throttled is True
    await evaluator.notify_failure(_ctx(other.id, status=CheckStatus.ERROR), other)
    assert len(dispatcher.calls) == 2

    clock.now += 3600
    await evaluator.notify_failure(down, endpoint)
    assert len(dispatcher.calls) == 3
