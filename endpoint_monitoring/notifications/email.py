"""SMTP delivery for EMAIL channels."""

from __future__ import annotations

import asyncio
import html
import smtplib
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import structlog

from endpoint_monitoring.config import EmailConfig
from endpoint_monitoring.notifications.payload import AlertNotification


logger = structlog.get_logger(__name__)


def render_alert_email(n: AlertNotification, *, dashboard_url: str) -> tuple[str, str, str]:
    """Return ``(subject, html_body, text_body)`` for one alert."""
    status = n.status.upper()
    subject = f"Alert: {n.endpoint_name} - {status}"
    when = datetime.fromtimestamp(n.timestamp_ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    link = f"{dashboard_url.rstrip('/')}/app/monitoring"

    details = [("Status", status)]
    if n.status_code is not None:
        details.append(("Status Code", str(n.status_code)))
    if n.error_message:
        details.append(("Error", n.error_message))
    if n.response_time_ms is not None:
        details.append(("Response Time", f"{round(n.response_time_ms)}ms"))

    rows = "".join(
        f'<div><span class="label">{html.escape(k)}:</span> <span class="value">{html.escape(v)}</span></div>'
        for k, v in details
    )
    html_body = (
        "<!DOCTYPE html><html><head><style>"
        "body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }"
        ".header { background: #dc2626; color: white; padding: 20px; }"
        ".detail { margin: 10px 0; padding: 10px; border-left: 3px solid #dc2626; }"
        ".label { font-weight: bold; color: #6b7280; }"
        "</style></head><body>"
        '<div class="header"><h2 style="margin: 0;">API Endpoint Alert</h2></div>'
        f"<p>Alert <strong>{html.escape(n.alert_name)}</strong> fired for a monitoring check:</p>"
        '<div class="detail">'
        f'<div><span class="label">Endpoint:</span> <span class="value">{html.escape(n.endpoint_name)}</span></div>'
        f'<div><span class="label">URL:</span> <span class="value">{html.escape(n.endpoint_url)}</span></div>'
        "</div>"
        f'<div class="detail">{rows}</div>'
        f'<div class="detail"><span class="label">Timestamp:</span> {html.escape(when)}</div>'
        f'<p><a href="{html.escape(link, quote=True)}">View Monitoring Dashboard</a></p>'
        "<p>This is an automated alert from your API Monitoring system.</p>"
        "</body></html>"
    )

    text_lines = [
        "API Endpoint Alert",
        f"Alert: {n.alert_name}",
        f"Endpoint: {n.endpoint_name}",
        f"URL: {n.endpoint_url}",
    ]
    text_lines += [f"{k}: {v}" for k, v in details]
    text_lines += [f"Timestamp: {when}", "", f"Dashboard: {link}"]
    return subject, html_body, "\n".join(text_lines)


class SmtpMailer:
    """Blocking smtplib delivery run in a worker thread.

    Port 465 uses implicit TLS, anything else upgrades with STARTTLS.
    """

    def __init__(self, config: EmailConfig) -> None:
        self.config = config

    @property
    def configured(self) -> bool:
        return self.config.configured

    def _send_sync(self, to: str, subject: str, html_body: str, text_body: str) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.config.sender or str(self.config.username)
        msg["To"] = to
        msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        host = str(self.config.host)
        if self.config.port == 465:
            with smtplib.SMTP_SSL(host, self.config.port, timeout=30) as server:
                server.login(str(self.config.username), str(self.config.password))
                server.send_message(msg)
        else:
            with smtplib.SMTP(host, self.config.port, timeout=30) as server:
                server.starttls()
                server.login(str(self.config.username), str(self.config.password))
                server.send_message(msg)

    async def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        if not self.configured:
            logger.warning("Email not configured; alert not sent", to=to, subject=subject)
            return False
        try:
            await asyncio.to_thread(self._send_sync, to, subject, html_body, text_body)
        except smtplib.SMTPAuthenticationError:
            logger.error("SMTP authentication failed", host=self.config.host, to=to)
            return False
        except Exception as exc:
            logger.error("Failed to send alert email", to=to, error=str(exc))
            return False
        logger.info("Alert email sent", to=to, subject=subject)
        return True
