from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any

import structlog
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from endpoint_monitoring.config import MonitoringConfig, get_config
from endpoint_monitoring.errors import BadRequestError, ForbiddenError, MonitoringError, RateLimitError
from endpoint_monitoring.models import PlanType
from endpoint_monitoring.plans import coerce_plan
from endpoint_monitoring.rate_limit import RateLimiter
from endpoint_monitoring.scheduler import get_monitoring_scheduler, peek_monitoring_scheduler
from endpoint_monitoring.schema import SendRequestBody
from endpoint_monitoring.service import MonitoringService
from endpoint_monitoring.storage import MonitoringStore


logger = structlog.get_logger(__name__)

DAY_SECONDS = 86400.0


@dataclass(frozen=True)
class RequestContext:
    organization_id: str
    user_id: str
    plan: PlanType


def get_service(req: Request) -> MonitoringService:
    service: Any = getattr(req.app.state, "service", None)
    if not isinstance(service, MonitoringService):
        raise RuntimeError("Monitoring service not configured")
    return service


def require_context(req: Request) -> RequestContext:
    organization_id = (req.headers.get("x-organization-id") or "").strip()
    if not organization_id:
        raise ForbiddenError("Organization context is required")
    user_id = (req.headers.get("x-user-id") or "").strip() or organization_id
    return RequestContext(
        organization_id=organization_id,
        user_id=user_id,
        plan=coerce_plan(req.headers.get("x-plan")),
    )


def create_app(
    config: MonitoringConfig | None = None,
    *,
    service: MonitoringService | None = None,
    rate_limiter: RateLimiter | None = None,
) -> FastAPI:
    app = FastAPI(title="Endpoint Monitoring", version="0.1.0")
    app.state.config = config or get_config()
    app.state.service = service or MonitoringService(
        MonitoringStore(app.state.config.database.path), config=app.state.config
    )
    app.state.rate_limiter = rate_limiter or RateLimiter()

    @app.exception_handler(MonitoringError)
    async def _monitoring_error(_req: Request, exc: MonitoringError) -> JSONResponse:
        headers = {}
        if isinstance(exc, RateLimitError):
            headers["Retry-After"] = str(max(0, exc.retry_after_seconds))
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()}, headers=headers)

    @app.on_event("startup")
    async def _startup() -> None:
        svc: MonitoringService = app.state.service
        await asyncio.to_thread(svc.store.ensure_schema)
        cfg: MonitoringConfig = app.state.config
        if cfg.scheduler.enabled:
            await get_monitoring_scheduler(svc, cfg.scheduler).start()
        else:
            logger.info("Periodic checks disabled; set ENABLE_CRON=true to enable")

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        scheduler = peek_monitoring_scheduler()
        if scheduler is not None:
            await scheduler.stop()

    def _rate_limit(ctx: RequestContext) -> None:
        limiter: RateLimiter = app.state.rate_limiter
        limiter.check(ctx.user_id, ctx.plan)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"ok": True, "ts": time.time()}

    @app.post("/api/v1/endpoints/{endpoint_id}/check")
    async def run_check(
        endpoint_id: str,
        ctx: RequestContext = Depends(require_context),
        svc: MonitoringService = Depends(get_service),
    ) -> dict[str, Any]:
        _rate_limit(ctx)
        result = await svc.run_check(endpoint_id, organization_id=ctx.organization_id)
        return result.as_dict()

    @app.get("/api/v1/endpoints/{endpoint_id}/uptime")
    async def endpoint_uptime(
        endpoint_id: str,
        days: float = Query(30, gt=0, le=365),
        ctx: RequestContext = Depends(require_context),
        svc: MonitoringService = Depends(get_service),
    ) -> dict[str, Any]:
        stats = await asyncio.to_thread(svc.get_endpoint_uptime, endpoint_id, ctx.organization_id, days)
        avg = await asyncio.to_thread(svc.get_average_response_time, endpoint_id, ctx.organization_id, days)
        return {**stats.as_dict(), "avgResponseTime": avg}

    @app.get("/api/v1/endpoints/{endpoint_id}/history")
    async def endpoint_history(
        endpoint_id: str,
        skip: int = Query(0, ge=0),
        take: int = Query(50, ge=1, le=500),
        ctx: RequestContext = Depends(require_context),
        svc: MonitoringService = Depends(get_service),
    ) -> dict[str, Any]:
        checks = await asyncio.to_thread(
            svc.get_monitoring_history, endpoint_id, ctx.organization_id, skip=skip, take=take
        )
        return {"checks": [c.as_dict() for c in checks]}

    @app.get("/api/v1/stats/{scope_id}")
    async def overall_stats(
        scope_id: str,
        days: float = Query(7, gt=0, le=365),
        scope: str = Query("user"),
        ctx: RequestContext = Depends(require_context),
        svc: MonitoringService = Depends(get_service),
    ) -> dict[str, Any]:
        if scope not in ("user", "organization", "endpoint"):
            raise BadRequestError(f"Unsupported stats scope: {scope}")
        now = time.time()
        stats = await asyncio.to_thread(
            svc.get_visible_overall_stats,
            scope_id,
            now - days * DAY_SECONDS,
            now,
            scope=scope,
            organization_id=ctx.organization_id,
            user_id=ctx.user_id,
        )
        return stats.as_dict()

    @app.post("/api/v1/requests")
    async def send_request(
        payload: SendRequestBody,
        ctx: RequestContext = Depends(require_context),
        svc: MonitoringService = Depends(get_service),
    ) -> dict[str, Any]:
        method = payload.normalized_method()
        if method is None:
            raise BadRequestError(f"Unsupported HTTP method: {payload.method}")
        _rate_limit(ctx)
        resp = await svc.send_request(method=method, url=payload.url, headers=payload.headers, body=payload.body)
        return resp.as_dict()

    @app.get("/api/v1/scheduler/status")
    async def scheduler_status() -> dict[str, Any]:
        scheduler = peek_monitoring_scheduler()
        if scheduler is None:
            return {"running": False, "job_count": 0, "jobs": [], "next_run": None}
        return scheduler.status()

    return app
