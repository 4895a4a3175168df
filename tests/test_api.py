from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from endpoint_monitoring.api import create_app
from endpoint_monitoring.config import DatabaseConfig, MonitoringConfig, SchedulerConfig
from endpoint_monitoring.models import CheckStatus, ProbeOutcome
from endpoint_monitoring.scheduler import monitoring_scheduler
from endpoint_monitoring.storage import MonitoringStore


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "api.db")


@pytest.fixture
def client(db_path: str, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(monitoring_scheduler, "_instance", None)
    config = MonitoringConfig(
        database=DatabaseConfig(path=db_path),
        scheduler=SchedulerConfig(enabled=False),
    )
    with TestClient(create_app(config)) as c:
        yield c


def _org(org: str = "org-1", user: str = "user-1", plan: str | None = None) -> dict[str, str]:
    headers = {"x-organization-id": org, "x-user-id": user}
    if plan:
        headers["x-plan"] = plan
    return headers


def test_health(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True


def test_check_endpoint_and_read_back(client: TestClient, db_path: str, target_base_url: str) -> None:
    store = MonitoringStore(db_path)
    endpoint = store.insert_endpoint(
        user_id="user-1", organization_id="org-1", name="Local", url=f"{target_base_url}/ok", timeout_ms=5000
    )

    resp = client.post(f"/api/v1/endpoints/{endpoint.id}/check", headers=_org())
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "SUCCESS"
    assert body["statusCode"] == 200
    assert body["endpointId"] == endpoint.id

    history = client.get(f"/api/v1/endpoints/{endpoint.id}/history", headers=_org()).json()
    assert [c["id"] for c in history["checks"]] == [body["id"]]

    uptime = client.get(f"/api/v1/endpoints/{endpoint.id}/uptime?days=1", headers=_org()).json()
    assert uptime["total"] == 1
    assert uptime["uptimePercentage"] == 100.0
    assert "avgResponseTime" in uptime


def test_other_org_cannot_check(client: TestClient, db_path: str) -> None:
    store = MonitoringStore(db_path)
    endpoint = store.insert_endpoint(user_id="u", organization_id="org-1", name="n", url="https://x.example.test/")

    resp = client.post(f"/api/v1/endpoints/{endpoint.id}/check", headers=_org("org-2", "user-2"))
    assert resp.status_code == 403
    assert resp.json() == {"error": {"code": "FORBIDDEN", "message": "Endpoint not found or access denied"}}


def test_missing_organization_header_is_forbidden(client: TestClient) -> None:
    resp = client.post("/api/v1/endpoints/anything/check")
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "FORBIDDEN"


def test_free_plan_rate_limit(client: TestClient) -> None:
    headers = _org(user="burst-user", plan="FREE")
    for _ in range(10):
        assert client.post("/api/v1/endpoints/missing/check", headers=headers).status_code == 403

    resp = client.post("/api/v1/endpoints/missing/check", headers=headers)
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "TOO_MANY_REQUESTS"
    assert int(resp.headers["Retry-After"]) > 0


def test_unknown_plan_header_is_bad_request(client: TestClient) -> None:
    resp = client.post("/api/v1/endpoints/x/check", headers=_org(plan="platinum"))
    assert resp.status_code == 400


def test_stats_are_camel_case(client: TestClient, db_path: str) -> None:
    store = MonitoringStore(db_path)
    endpoint = store.insert_endpoint(user_id="user-9", organization_id="org-9", name="n", url="https://x.example.test/")
    store.insert_check_result(endpoint, ProbeOutcome(status=CheckStatus.SUCCESS, response_time_ms=120.0))
    store.insert_check_result(endpoint, ProbeOutcome(status=CheckStatus.TIMEOUT, response_time_ms=30000.0))

    headers = _org(org="org-9", user="user-9")
    stats = client.get("/api/v1/stats/user-9?days=1", headers=headers).json()
    assert stats == {
        "totalChecks": 2,
        "successfulChecks": 1,
        "failedChecks": 1,
        "errorRate": 50.0,
        "uptimePercentage": 50.0,
        "avgResponseTime": 120.0,
    }
    assert client.get("/api/v1/stats/user-9?scope=planet", headers=headers).status_code == 400


def test_stats_limited_to_callers_organization(client: TestClient, db_path: str) -> None:
    store = MonitoringStore(db_path)
    endpoint = store.insert_endpoint(user_id="user-9", organization_id="org-9", name="n", url="https://x.example.test/")
    store.insert_check_result(endpoint, ProbeOutcome(status=CheckStatus.SUCCESS, response_time_ms=80.0))

    assert client.get("/api/v1/stats/user-9").status_code == 403

    outsider = _org(org="org-1", user="user-1")
    assert client.get("/api/v1/stats/user-9", headers=outsider).status_code == 403
    assert client.get("/api/v1/stats/org-9?scope=organization", headers=outsider).status_code == 403
    assert client.get(f"/api/v1/stats/{endpoint.id}?scope=endpoint", headers=outsider).status_code == 403

    member = _org(org="org-9", user="user-2")
    org_stats = client.get("/api/v1/stats/org-9?scope=organization", headers=member)
    assert org_stats.status_code == 200
    assert org_stats.json()["totalChecks"] == 1
    endpoint_stats = client.get(f"/api/v1/stats/{endpoint.id}?scope=endpoint", headers=member)
    assert endpoint_stats.json()["avgResponseTime"] == 80.0


def test_send_request(client: TestClient, target_base_url: str) -> None:
    resp = client.post(
        "/api/v1/requests",
        headers=_org(user="adhoc-user"),
        json={"method": "get", "url": f"{target_base_url}/ok"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == 200
    assert body["body"] == "hello"

    bad = client.post(
        "/api/v1/requests",
        headers=_org(user="adhoc-user"),
        json={"method": "TELEPORT", "url": f"{target_base_url}/ok"},
    )
    assert bad.status_code == 400


def test_scheduler_status_when_disabled(client: TestClient) -> None:
    status = client.get("/api/v1/scheduler/status").json()
    assert status["running"] is False
    assert status["jobs"] == []
