from __future__ import annotations

import asyncio
import json
import re
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from endpoint_monitoring.config import EmailConfig, NotificationsConfig
from endpoint_monitoring.errors import ChannelConfigError
from endpoint_monitoring.models import ChannelType, NotificationChannel
from endpoint_monitoring.notifications.email import SmtpMailer, render_alert_email
from endpoint_monitoring.notifications.payload import (
    AlertNotification,
    build_discord_payload,
    build_slack_payload,
    build_webhook_envelope,
)


logger = structlog.get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _require_http_url(value: str) -> str:
    v = str(value or "").strip()
    try:
        parsed = httpx.URL(v)
    except Exception as exc:
        raise ValueError(f"invalid URL: {v!r}") from exc
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise ValueError(f"URL must be http(s): {v!r}")
    return v


def redact_url(url: str) -> str:
    """Webhook URLs embed credentials; only log a prefix."""
    return url[:50] + "..." if len(url) > 50 else url


class EmailChannelConfig(BaseModel):
    emails: list[str] = Field(min_length=1)

    @field_validator("emails")
    @classmethod
    def check_addresses(cls, v: list[str]) -> list[str]:
        cleaned = [str(e).strip() for e in v]
        bad = [e for e in cleaned if not _EMAIL_RE.match(e)]
        if bad:
            raise ValueError(f"invalid email address: {bad[0]!r}")
        return cleaned


class WebhookChannelConfig(BaseModel):
    url: str
    headers: Optional[dict[str, str]] = None

    @field_validator("url")
    @classmethod
    def check_url(cls, v: str) -> str:
        return _require_http_url(v)


class SlackChannelConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    webhook_url: str = Field(alias="webhookUrl")

    @field_validator("webhook_url")
    @classmethod
    def check_url(cls, v: str) -> str:
        return _require_http_url(v)


class DiscordChannelConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    webhook_url: str = Field(alias="webhookUrl")

    @field_validator("webhook_url")
    @classmethod
    def check_url(cls, v: str) -> str:
        return _require_http_url(v)


CHANNEL_CONFIG_MODELS: dict[ChannelType, type[BaseModel]] = {
    ChannelType.EMAIL: EmailChannelConfig,
    ChannelType.WEBHOOK: WebhookChannelConfig,
    ChannelType.SLACK: SlackChannelConfig,
    ChannelType.DISCORD: DiscordChannelConfig,
}


def coerce_channel_type(value: ChannelType | str) -> ChannelType:
    try:
        return value if isinstance(value, ChannelType) else ChannelType(str(value).strip().upper())
    except ValueError as exc:
        raise ChannelConfigError(f"Unknown notification channel type: {value}") from exc


def parse_channel_config(channel_type: ChannelType | str, raw: str | dict[str, Any]) -> BaseModel:
    """Validate stored or submitted channel JSON into the typed config for its kind."""
    kind = coerce_channel_type(channel_type)
    if isinstance(raw, dict):
        data = raw
    else:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise ChannelConfigError("Invalid configuration JSON") from exc
    if not isinstance(data, dict):
        raise ChannelConfigError("Invalid configuration JSON")
    try:
        return CHANNEL_CONFIG_MODELS[kind].model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ()))
        msg = first.get("msg", "invalid value")
        raise ChannelConfigError(f"Invalid {kind.value} configuration: {loc}: {msg}" if loc else f"Invalid {kind.value} configuration: {msg}") from exc


class ChannelSender(ABC):
    channel_type: ChannelType

    @abstractmethod
    async def send(self, notification: AlertNotification) -> bool:
        """Deliver one alert. Returns False on delivery failure."""

    async def deliver(self, notification: AlertNotification, *, timeout: float) -> bool:
        return await asyncio.wait_for(self.send(notification), timeout=timeout)


class _HttpJsonSender(ChannelSender):
    def __init__(self, *, http_client: httpx.AsyncClient, settings: NotificationsConfig) -> None:
        self.http_client = http_client
        self.settings = settings

    async def _post(self, url: str, payload: dict[str, Any], extra_headers: Optional[dict[str, str]] = None) -> bool:
        headers = {"Content-Type": "application/json", "User-Agent": self.settings.user_agent}
        headers.update(extra_headers or {})
        resp = await self.http_client.post(
            url,
            content=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
            headers=headers,
            timeout=self.settings.send_timeout_seconds,
        )
        ok = 200 <= resp.status_code < 300
        if not ok:
            logger.warning(
                "Channel delivery rejected",
                channel_type=self.channel_type.value,
                url=redact_url(url),
                status_code=resp.status_code,
                body=resp.text[:200],
            )
        return ok


class WebhookSender(_HttpJsonSender):
    channel_type = ChannelType.WEBHOOK

    def __init__(self, config: WebhookChannelConfig, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.config = config

    async def send(self, notification: AlertNotification) -> bool:
        return await self._post(self.config.url, build_webhook_envelope(notification), self.config.headers)


class SlackSender(_HttpJsonSender):
    channel_type = ChannelType.SLACK

    def __init__(self, config: SlackChannelConfig, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.config = config

    async def send(self, notification: AlertNotification) -> bool:
        return await self._post(self.config.webhook_url, build_slack_payload(notification))


class DiscordSender(_HttpJsonSender):
    channel_type = ChannelType.DISCORD

    def __init__(self, config: DiscordChannelConfig, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.config = config

    async def send(self, notification: AlertNotification) -> bool:
        return await self._post(self.config.webhook_url, build_discord_payload(notification))


class EmailSender(ChannelSender):
    """Sends to every address at once; each address gets its own timeout."""

    channel_type = ChannelType.EMAIL

    def __init__(
        self,
        config: EmailChannelConfig,
        *,
        mailer: SmtpMailer,
        dashboard_url: str,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.config = config
        self.mailer = mailer
        self.dashboard_url = dashboard_url
        self.timeout_seconds = timeout_seconds

    async def _send_to(self, address: str, message: tuple[str, str, str], timeout: Optional[float]) -> bool:
        try:
            return bool(await asyncio.wait_for(self.mailer.send(address, *message), timeout=timeout))
        except asyncio.TimeoutError:
            logger.error("Email delivery timed out", to=address, timeout_seconds=timeout)
        except Exception as exc:
            logger.error("Email delivery raised", to=address, error=str(exc))
        return False

    async def _send_all(self, notification: AlertNotification, timeout: Optional[float]) -> bool:
        message = render_alert_email(notification, dashboard_url=self.dashboard_url)
        results = await asyncio.gather(*(self._send_to(a, message, timeout) for a in self.config.emails))
        delivered = sum(1 for ok in results if ok)
        if 0 < delivered < len(results):
            logger.warning("Email partially delivered", delivered=delivered, addresses=len(results))
        return delivered > 0

    async def send(self, notification: AlertNotification) -> bool:
        return await self._send_all(notification, self.timeout_seconds)

    async def deliver(self, notification: AlertNotification, *, timeout: float) -> bool:
        # Bounded per address; an outer cap would cut off the slower addresses.
        return await self._send_all(notification, self.timeout_seconds or timeout)


def build_sender(
    channel: NotificationChannel,
    *,
    http_client: httpx.AsyncClient,
    settings: NotificationsConfig,
    mailer: Optional[SmtpMailer] = None,
    email_settings: Optional[EmailConfig] = None,
) -> ChannelSender:
    kind = coerce_channel_type(channel.type)
    config = parse_channel_config(kind, channel.config)
    if kind is ChannelType.EMAIL:
        email_settings = email_settings or EmailConfig()
        return EmailSender(
            config,  # type: ignore[arg-type]
            mailer=mailer or SmtpMailer(email_settings),
            dashboard_url=email_settings.dashboard_url,
            timeout_seconds=settings.send_timeout_seconds,
        )
    if kind is ChannelType.WEBHOOK:
        return WebhookSender(config, http_client=http_client, settings=settings)  # type: ignore[arg-type]
    if kind is ChannelType.SLACK:
        return SlackSender(config, http_client=http_client, settings=settings)  # type: ignore[arg-type]
    return DiscordSender(config, http_client=http_client, settings=settings)  # type: ignore[arg-type]
