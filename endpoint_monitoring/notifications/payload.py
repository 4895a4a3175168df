from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from endpoint_monitoring.models import CheckStatus


@dataclass(frozen=True)
class AlertNotification:
    """Everything a channel needs to describe one triggered alert."""

    alert_id: str
    alert_name: str
    condition: str
    threshold: float
    endpoint_name: str
    endpoint_url: str
    status: str
    timestamp_ts: float
    status_code: int | None = None
    error_message: str | None = None
    response_time_ms: float | None = None

    @property
    def timestamp_iso(self) -> str:
        dt = datetime.fromtimestamp(self.timestamp_ts, tz=timezone.utc)
        return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _fmt_ms(value: float | None) -> str:
    if value is None:
        return "N/A"
    if float(value).is_integer():
        return f"{int(value)}ms"
    return f"{round(float(value))}ms"


def build_webhook_envelope(n: AlertNotification) -> dict[str, Any]:
    return {
        "type": "endpoint_failure",
        "endpoint": {"name": n.endpoint_name, "url": n.endpoint_url},
        "status": n.status,
        "statusCode": n.status_code,
        "errorMessage": n.error_message,
        "responseTime": n.response_time_ms,
        "timestamp": n.timestamp_iso,
    }


def _slack_emoji(status: str) -> str:
    if status == CheckStatus.TIMEOUT.value:
        return ":clock:"
    if status == CheckStatus.ERROR.value:
        return ":x:"
    return ":warning:"


def build_slack_payload(n: AlertNotification) -> dict[str, Any]:
    blocks: list[dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f"{_slack_emoji(n.status)} API Endpoint Alert", "emoji": True},
        },
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Endpoint:*\n{n.endpoint_name}"},
                {"type": "mrkdwn", "text": f"*Status:*\n{n.status.upper()}"},
                {"type": "mrkdwn", "text": f"*URL:*\n{n.endpoint_url}"},
                {"type": "mrkdwn", "text": f"*Status Code:*\n{n.status_code if n.status_code is not None else 'N/A'}"},
            ],
        },
    ]
    if n.error_message:
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": f"*Error:*\n```{n.error_message}```"}})
    blocks.append(
        {
            "type": "context",
            "elements": [
                {"type": "mrkdwn", "text": f"Response time: {_fmt_ms(n.response_time_ms)} | {n.timestamp_iso}"},
            ],
        }
    )
    return {"blocks": blocks}


DISCORD_COLOR_TIMEOUT = 0xFFA500
DISCORD_COLOR_ERROR = 0xFF0000
DISCORD_COLOR_DEFAULT = 0xFF6B6B


def build_discord_payload(n: AlertNotification) -> dict[str, Any]:
    if n.status == CheckStatus.TIMEOUT.value:
        color = DISCORD_COLOR_TIMEOUT
    elif n.status == CheckStatus.ERROR.value:
        color = DISCORD_COLOR_ERROR
    else:
        color = DISCORD_COLOR_DEFAULT

    fields: list[dict[str, Any]] = [
        {"name": "Endpoint", "value": n.endpoint_name, "inline": True},
        {"name": "Status", "value": n.status.upper(), "inline": True},
        {"name": "URL", "value": n.endpoint_url, "inline": False},
        {"name": "Status Code", "value": str(n.status_code) if n.status_code is not None else "N/A", "inline": True},
        {"name": "Response Time", "value": _fmt_ms(n.response_time_ms), "inline": True},
    ]
    if n.error_message:
        # Embed field values are capped at 1024 characters.
        fields.append({"name": "Error", "value": f"```{n.error_message[:1000]}```", "inline": False})

    return {
        "embeds": [
            {
                "title": "🚨 API Endpoint Alert",
                "description": f"Alert **{n.alert_name}** triggered for **{n.endpoint_name}**",
                "color": color,
                "fields": fields,
                "timestamp": n.timestamp_iso,
            }
        ]
    }
