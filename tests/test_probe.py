from __future__ import annotations

import json

import httpx
import pytest

from endpoint_monitoring.config import ProbeConfig
from endpoint_monitoring.models import CheckStatus, EndpointDefinition
from endpoint_monitoring.probe import ProbeExecutor, build_request_headers, send_request


def _endpoint(url: str, **kwargs) -> EndpointDefinition:
    return EndpointDefinition(
        id="ep-1",
        organization_id="org-1",
        user_id="user-1",
        name="Local",
        url=url,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_probe_success_records_status_latency_and_size(target_base_url: str) -> None:
    outcome = await ProbeExecutor().probe(_endpoint(f"{target_base_url}/ok", timeout_ms=5000))
    assert outcome.status is CheckStatus.SUCCESS
    assert outcome.status_code == 200
    assert outcome.response_size == len(b"hello")
    assert outcome.error_message is None
    assert outcome.response_time_ms is not None and outcome.response_time_ms >= 0


@pytest.mark.asyncio
async def test_probe_size_counts_utf8_bytes(target_base_url: str) -> None:
    outcome = await ProbeExecutor().probe(_endpoint(f"{target_base_url}/unicode", timeout_ms=5000))
    assert outcome.status is CheckStatus.SUCCESS
    assert outcome.response_size == len("héllo".encode("utf-8"))


@pytest.mark.asyncio
async def test_probe_status_mismatch_is_failure_naming_both_codes(target_base_url: str) -> None:
    outcome = await ProbeExecutor().probe(_endpoint(f"{target_base_url}/error", timeout_ms=5000))
    assert outcome.status is CheckStatus.FAILURE
    assert outcome.status_code == 500
    assert outcome.error_message == "Expected status 200, got 500"


@pytest.mark.asyncio
async def test_probe_non_200_expected_status(target_base_url: str) -> None:
    outcome = await ProbeExecutor().probe(
        _endpoint(f"{target_base_url}/created", method="POST", expected_status=201, timeout_ms=5000)
    )
    assert outcome.status is CheckStatus.SUCCESS
    assert outcome.status_code == 201


@pytest.mark.asyncio
async def test_probe_timeout_records_configured_timeout(target_base_url: str) -> None:
    outcome = await ProbeExecutor().probe(_endpoint(f"{target_base_url}/slow", timeout_ms=200))
    assert outcome.status is CheckStatus.TIMEOUT
    assert outcome.response_time_ms == 200.0
    assert outcome.status_code is None


@pytest.mark.asyncio
async def test_probe_timeout_can_record_elapsed_time(target_base_url: str) -> None:
    probe = ProbeExecutor(ProbeConfig(record_timeout_as_configured=False))
    outcome = await probe.probe(_endpoint(f"{target_base_url}/slow", timeout_ms=200))
    assert outcome.status is CheckStatus.TIMEOUT
    assert outcome.response_time_ms is not None
    assert 0 < outcome.response_time_ms < 1500


@pytest.mark.asyncio
async def test_probe_connection_error_is_error_outcome(closed_port_url: str) -> None:
    outcome = await ProbeExecutor().probe(_endpoint(closed_port_url, timeout_ms=2000))
    assert outcome.status is CheckStatus.ERROR
    assert outcome.status_code is None
    assert outcome.error_message


@pytest.mark.asyncio
async def test_probe_sends_method_headers_and_body(target_base_url: str, received_requests: list[dict]) -> None:
    endpoint = _endpoint(
        f"{target_base_url}/echo",
        method="PUT",
        headers={"X-Api-Key": "secret"},
        body='{"ping": true}',
        timeout_ms=5000,
    )
    async with httpx.AsyncClient() as client:
        outcome = await ProbeExecutor(http_client=client).probe(endpoint)

    assert outcome.status is CheckStatus.SUCCESS
    assert len(received_requests) == 1
    seen = received_requests[0]
    assert seen["method"] == "PUT"
    assert seen["headers"]["x-api-key"] == "secret"
    assert seen["headers"]["content-type"] == "application/json"
    assert json.loads(seen["body"]) == {"ping": True}


def test_endpoint_content_type_overrides_default() -> None:
    endpoint = _endpoint("http://example.invalid/", headers={"content-type": "text/plain", "X-A": "1"})
    headers = build_request_headers(endpoint, default_content_type="application/json")
    assert headers == {"content-type": "text/plain", "X-A": "1"}


@pytest.mark.asyncio
async def test_send_request_returns_response_details(target_base_url: str) -> None:
    resp = await send_request(method="post", url=f"{target_base_url}/echo", headers={"X-Trace": "t-1"}, body="abc")
    assert resp.status == 200
    assert resp.status_text == "OK"
    assert resp.headers["content-type"] == "application/json"
    echoed = json.loads(resp.body)
    assert echoed["method"] == "POST"
    assert echoed["body"] == "abc"
    assert resp.response_size == len(resp.body.encode("utf-8"))


@pytest.mark.asyncio
async def test_send_request_transport_failure_returns_status_zero(closed_port_url: str) -> None:
    resp = await send_request(method="GET", url=closed_port_url, timeout_seconds=2.0)
    assert resp.status == 0
    assert resp.status_text == "Error"
    assert resp.headers == {}
    assert resp.response_size == 0
    assert "error" in json.loads(resp.body)
