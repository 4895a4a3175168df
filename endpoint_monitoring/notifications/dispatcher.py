from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable

import httpx
import structlog

from endpoint_monitoring.config import EmailConfig, NotificationsConfig
from endpoint_monitoring.models import NotificationChannel
from endpoint_monitoring.notifications.channels import ChannelSender, build_sender
from endpoint_monitoring.notifications.email import SmtpMailer
from endpoint_monitoring.notifications.payload import AlertNotification
from endpoint_monitoring.storage import MonitoringStore


logger = structlog.get_logger(__name__)

SenderFactory = Callable[..., ChannelSender]


@dataclass(frozen=True)
class DispatchSummary:
    total: int
    success: int
    failed: int

    def as_dict(self) -> dict[str, int]:
        return {"total": self.total, "success": self.success, "failed": self.failed}


class NotificationDispatcher:
    """Fans one alert out to every active channel of an organization.

    Each channel send is isolated: exceptions, non-2xx responses, bad stored
    configuration and timeouts all resolve to ``False`` for that channel only.
    """

    def __init__(
        self,
        store: MonitoringStore,
        *,
        settings: NotificationsConfig | None = None,
        email_settings: EmailConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        mailer: SmtpMailer | None = None,
        sender_factory: SenderFactory = build_sender,
    ) -> None:
        self.store = store
        self.settings = settings or NotificationsConfig()
        self.email_settings = email_settings or EmailConfig()
        self.http_client = http_client
        self.mailer = mailer or SmtpMailer(self.email_settings)
        self.sender_factory = sender_factory

    async def send_notifications(self, organization_id: str, notification: AlertNotification) -> DispatchSummary:
        channels = await asyncio.to_thread(self.store.list_active_notification_channels, organization_id)
        if not channels:
            logger.info(
                "No active notification channels configured",
                organization_id=organization_id,
                endpoint=notification.endpoint_name,
            )
            return DispatchSummary(total=0, success=0, failed=0)

        logger.info(
            "Sending notifications",
            organization_id=organization_id,
            channel_count=len(channels),
            endpoint=notification.endpoint_name,
        )

        if self.http_client is not None:
            results = await self._fan_out(channels, notification, self.http_client)
        else:
            async with httpx.AsyncClient() as http_client:
                results = await self._fan_out(channels, notification, http_client)

        success = sum(1 for ok in results if ok)
        summary = DispatchSummary(total=len(channels), success=success, failed=len(channels) - success)
        logger.info("Notifications sent", organization_id=organization_id, **summary.as_dict())
        return summary

    async def _fan_out(
        self,
        channels: list[NotificationChannel],
        notification: AlertNotification,
        http_client: httpx.AsyncClient,
    ) -> list[bool]:
        return list(await asyncio.gather(*(self._send_one(c, notification, http_client) for c in channels)))

    async def _send_one(
        self,
        channel: NotificationChannel,
        notification: AlertNotification,
        http_client: httpx.AsyncClient,
    ) -> bool:
        log = logger.bind(channel_id=channel.id, channel_name=channel.name, channel_type=channel.type)
        try:
            sender = self.sender_factory(
                channel,
                http_client=http_client,
                settings=self.settings,
                mailer=self.mailer,
                email_settings=self.email_settings,
            )
            ok = await sender.deliver(notification, timeout=self.settings.send_timeout_seconds)
        except asyncio.TimeoutError:
            log.error("Notification send timed out", timeout_seconds=self.settings.send_timeout_seconds)
            return False
        except Exception as exc:
            log.error("Notification send failed", error=str(exc), error_type=type(exc).__name__)
            return False

        if ok:
            log.info("Notification sent")
        else:
            log.warning("Notification not delivered")
        return bool(ok)

