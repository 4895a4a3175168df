"""Command-line entry point.

Usage:
    python -m endpoint_monitoring serve [--with-api] [--host H] [--port P]
    python -m endpoint_monitoring check <endpoint_id>
    python -m endpoint_monitoring run-once
    python -m endpoint_monitoring cleanup
    python -m endpoint_monitoring stats <scope_id> [--days N] [--scope user|organization|endpoint]
    python -m endpoint_monitoring init-db
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import time
from typing import Any, Optional

import structlog

from endpoint_monitoring.config import MonitoringConfig, load_config, set_config
from endpoint_monitoring.errors import MonitoringError
from endpoint_monitoring.logging_config import configure_logging
from endpoint_monitoring.service import DAY_SECONDS, MonitoringService
from endpoint_monitoring.storage import MonitoringStore


logger = structlog.get_logger(__name__)


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False, sort_keys=True))


def _build_service(config: MonitoringConfig) -> MonitoringService:
    store = MonitoringStore(config.database.path)
    store.ensure_schema()
    return MonitoringService(store, config=config)


async def _serve_scheduler(config: MonitoringConfig) -> None:
    from endpoint_monitoring.scheduler import get_monitoring_scheduler

    scheduler = get_monitoring_scheduler(_build_service(config), config.scheduler)
    await scheduler.start()
    logger.info("Monitoring scheduler serving", **scheduler.status())
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()


def _serve_api(config: MonitoringConfig, host: str, port: int) -> None:
    import uvicorn

    from endpoint_monitoring.api import create_app

    uvicorn.run(create_app(config), host=host, port=port, log_level=config.logging.level.lower())


async def _run_command(args: argparse.Namespace, config: MonitoringConfig) -> int:
    if args.command == "init-db":
        MonitoringStore(config.database.path).ensure_schema()
        print(f"Schema ready at {config.database.path}")
        return 0

    service = _build_service(config)

    if args.command == "check":
        result = await service.run_check(args.endpoint_id)
        _print_json(result.as_dict())
        return 0 if result.status.value == "SUCCESS" else 1

    if args.command == "run-once":
        _print_json(await service.run_active_checks())
        return 0

    if args.command == "cleanup":
        _print_json({"deleted": service.delete_old_checks(), "throttle_purged": service.purge_throttle_entries()})
        return 0

    if args.command == "stats":
        now = time.time()
        stats = service.get_overall_stats(args.scope_id, now - args.days * DAY_SECONDS, now, scope=args.scope)
        _print_json(stats.as_dict())
        return 0

    raise ValueError(f"Unknown command: {args.command}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="endpoint_monitoring", description="Endpoint monitoring and alerting engine")
    parser.add_argument("--config", default=None, help="Path to YAML config")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the periodic check and cleanup jobs")
    serve.add_argument("--with-api", action="store_true", help="Also serve the HTTP API")
    serve.add_argument("--host", default=os.getenv("ENDPOINT_MONITOR_HOST", "0.0.0.0"))
    serve.add_argument("--port", type=int, default=int(os.getenv("ENDPOINT_MONITOR_PORT", "8000")))

    check = sub.add_parser("check", help="Check one endpoint now")
    check.add_argument("endpoint_id")

    sub.add_parser("run-once", help="Run one active-checks tick and exit")
    sub.add_parser("cleanup", help="Delete check history past retention")

    stats = sub.add_parser("stats", help="Print overall stats for a user, organization or endpoint")
    stats.add_argument("scope_id")
    stats.add_argument("--days", type=float, default=7.0)
    stats.add_argument("--scope", choices=["user", "organization", "endpoint"], default="user")

    sub.add_parser("init-db", help="Create or migrate the database schema")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    if args.log_level:
        config.logging.level = args.log_level
    set_config(config)
    configure_logging(config.logging.level, config.logging.json_output)

    # Webhook URLs carry secrets; keep transport-level request logging quiet.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    if args.command == "serve":
        config.scheduler.enabled = True
        if args.with_api:
            _serve_api(config, args.host, args.port)
            return 0
        try:
            asyncio.run(_serve_scheduler(config))
        except KeyboardInterrupt:
            logger.info("Shutting down")
        return 0

    try:
        return asyncio.run(_run_command(args, config))
    except MonitoringError as exc:
        _print_json({"error": exc.to_dict()})
        return 2
