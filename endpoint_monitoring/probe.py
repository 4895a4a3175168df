from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from endpoint_monitoring.config import ProbeConfig
from endpoint_monitoring.models import CheckStatus, EndpointDefinition, ProbeOutcome


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AdHocResponse:
    status: int
    status_text: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""
    response_time_ms: float = 0.0
    response_size: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "statusText": self.status_text,
            "headers": dict(self.headers),
            "body": self.body,
            "responseTime": self.response_time_ms,
            "responseSize": self.response_size,
        }


def _error_message(exc: BaseException) -> str:
    msg = str(exc).strip() or type(exc).__name__
    cause = exc.__cause__ or exc.__context__
    if cause is not None and cause is not exc:
        cause_msg = str(cause).strip()
        if cause_msg and cause_msg not in msg:
            msg = f"{msg} (cause: {cause_msg})"
    return msg


def _body_size(text: str) -> int:
    return len(text.encode("utf-8"))


def build_request_headers(endpoint: EndpointDefinition, *, default_content_type: str) -> dict[str, str]:
    """Default Content-Type first, endpoint headers override it."""
    headers: dict[str, str] = {}
    if default_content_type:
        headers["Content-Type"] = default_content_type
    for key, value in (endpoint.headers or {}).items():
        # Header names are case-insensitive; drop the default if the endpoint sets its own.
        if key.lower() == "content-type":
            headers.pop("Content-Type", None)
        headers[str(key)] = str(value)
    return headers


class ProbeExecutor:
    """Issues one bounded HTTP request per endpoint and classifies the outcome.

    The executor keeps no per-endpoint state, so one instance can serve
    concurrent checks. Pass ``http_client`` to share a connection pool; when
    omitted a client is opened per probe.
    """

    def __init__(self, config: ProbeConfig | None = None, *, http_client: httpx.AsyncClient | None = None) -> None:
        self.config = config or ProbeConfig()
        self._http_client = http_client

    async def probe(self, endpoint: EndpointDefinition) -> ProbeOutcome:
        timeout_s = max(0.001, endpoint.timeout_ms / 1000.0)
        headers = build_request_headers(endpoint, default_content_type=self.config.default_content_type)
        started = time.perf_counter()

        try:
            if self._http_client is not None:
                status_code, text = await asyncio.wait_for(
                    self._fetch(self._http_client, endpoint, headers, timeout_s), timeout=timeout_s
                )
            else:
                async with httpx.AsyncClient(follow_redirects=True) as http_client:
                    status_code, text = await asyncio.wait_for(
                        self._fetch(http_client, endpoint, headers, timeout_s), timeout=timeout_s
                    )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            latency = float(endpoint.timeout_ms) if self.config.record_timeout_as_configured else elapsed_ms
            logger.warning(
                "Probe timed out",
                endpoint_id=endpoint.id,
                url=endpoint.url,
                timeout_ms=endpoint.timeout_ms,
                elapsed_ms=round(elapsed_ms, 1),
                error=type(exc).__name__,
            )
            return ProbeOutcome(
                status=CheckStatus.TIMEOUT,
                response_time_ms=latency,
                error_message=f"Request timeout after {endpoint.timeout_ms}ms",
            )
        except Exception as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            message = _error_message(exc)
            logger.warning("Probe failed", endpoint_id=endpoint.id, url=endpoint.url, error=message)
            return ProbeOutcome(
                status=CheckStatus.ERROR,
                response_time_ms=round(elapsed_ms, 3),
                error_message=message,
            )

        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)
        size = _body_size(text)
        if status_code == endpoint.expected_status:
            return ProbeOutcome(
                status=CheckStatus.SUCCESS,
                response_time_ms=elapsed_ms,
                status_code=status_code,
                response_size=size,
            )
        return ProbeOutcome(
            status=CheckStatus.FAILURE,
            response_time_ms=elapsed_ms,
            status_code=status_code,
            response_size=size,
            error_message=f"Expected status {endpoint.expected_status}, got {status_code}",
        )

    @staticmethod
    async def _fetch(
        http_client: httpx.AsyncClient,
        endpoint: EndpointDefinition,
        headers: dict[str, str],
        timeout_s: float,
    ) -> tuple[int, str]:
        resp = await http_client.request(
            endpoint.method.upper(),
            endpoint.url,
            headers=headers,
            content=endpoint.body if endpoint.body else None,
            timeout=timeout_s,
        )
        # request() has already read the body; .text decodes it.
        return int(resp.status_code), resp.text


async def send_request(
    *,
    method: str,
    url: str,
    headers: dict[str, str] | None = None,
    body: str | None = None,
    timeout_seconds: float = 30.0,
    http_client: httpx.AsyncClient | None = None,
) -> AdHocResponse:
    """Run one ad-hoc request. Transport failures come back as status 0."""
    started = time.perf_counter()
    try:
        if http_client is not None:
            resp = await asyncio.wait_for(
                http_client.request(method.upper(), url, headers=headers or {}, content=body or None, timeout=timeout_seconds),
                timeout=timeout_seconds,
            )
        else:
            async with httpx.AsyncClient(follow_redirects=True) as client:
                resp = await asyncio.wait_for(
                    client.request(method.upper(), url, headers=headers or {}, content=body or None, timeout=timeout_seconds),
                    timeout=timeout_seconds,
                )
    except Exception as exc:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)
        if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
            message = f"Request timeout after {int(timeout_seconds * 1000)}ms"
        else:
            message = _error_message(exc)
        logger.error("Request failed", url=url, method=method, response_time_ms=elapsed_ms, error=message)
        return AdHocResponse(
            status=0,
            status_text="Error",
            headers={},
            body=json.dumps({"error": message}),
            response_time_ms=elapsed_ms,
            response_size=0,
        )

    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)
    text = resp.text
    return AdHocResponse(
        status=int(resp.status_code),
        status_text=resp.reason_phrase,
        headers={k: v for k, v in resp.headers.items()},
        body=text,
        response_time_ms=elapsed_ms,
        response_size=_body_size(text),
    )
