"""
Email Notification Service

Sends threshold alert emails over SMTP. The blocking smtplib session runs in a
worker thread so the event loop is never stalled by a slow mail server.

Delivery failures are reported as a False result and logged; nothing raised by
the SMTP layer escapes `send()`.
"""

from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import structlog

from usage_guard.models.notification_rule import MetricType
from usage_guard.shared.core.config import get_settings
from usage_guard.shared.core.exceptions import NotificationDeliveryError

logger = structlog.get_logger()


@dataclass(frozen=True)
class ThresholdAlert:
    agent_name: str
    metric_type: str
    threshold: float
    actual_value: float
    period: str
    timestamp: str


def format_metric_value(value: float, metric_type: str) -> str:
    if metric_type == MetricType.COST.value:
        return f"${value:.4f}"
    return f"{value:,.0f}"


def render_threshold_alert(alert: ThresholdAlert) -> tuple[str, str, str]:
    """Return (subject, html_body, text_body) for a threshold alert."""
    threshold = format_metric_value(alert.threshold, alert.metric_type)
    actual = format_metric_value(alert.actual_value, alert.metric_type)
    subject = f"{alert.agent_name} exceeded {alert.metric_type} threshold ({actual})"

    agent = html.escape(alert.agent_name)
    metric = html.escape(alert.metric_type)
    period = html.escape(alert.period)
    html_body = f"""
    <html>
    <body style="font-family: Arial, sans-serif; padding: 20px; color: #1f2937;">
        <p style="display: inline-block; background: #fee2e2; color: #b91c1c;
                  padding: 4px 10px; border-radius: 12px;">Threshold exceeded</p>
        <h2>{agent} exceeded the {metric} limit</h2>
        <p>Your agent <strong>{agent}</strong> has exceeded the
           <strong>{metric}</strong> threshold for the current
           <strong>{period}</strong> period.</p>
        <table style="border-collapse: collapse; margin: 16px 0;">
            <tr>
                <td style="padding: 8px 16px;">Threshold</td>
                <td style="padding: 8px 16px;"><strong>{html.escape(threshold)}</strong></td>
            </tr>
            <tr>
                <td style="padding: 8px 16px;">Actual usage</td>
                <td style="padding: 8px 16px; color: #b91c1c;">
                    <strong>{html.escape(actual)}</strong>
                </td>
            </tr>
        </table>
        <p style="color: #6b7280; font-size: 12px;">
            Period: {period} &middot; Triggered at {html.escape(alert.timestamp)} UTC
        </p>
    </body>
    </html>
    """
    text_body = (
        f"{alert.agent_name} exceeded the {alert.metric_type} limit.\n\n"
        f"Threshold: {threshold}\n"
        f"Actual usage: {actual}\n"
        f"Period: {alert.period}\n"
        f"Triggered at: {alert.timestamp} UTC\n"
    )
    return subject, html_body, text_body


class EmailService:
    """SMTP sender for threshold alerts."""

    def __init__(
        self,
        smtp_host: Optional[str],
        smtp_port: int,
        smtp_user: Optional[str],
        smtp_password: Optional[str],
        from_email: str,
        use_tls: bool = True,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_email = from_email
        self.use_tls = use_tls
        self.timeout_seconds = timeout_seconds

    async def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send one multipart message. Returns True when the server accepted it."""
        if not to:
            logger.warning("email_send_skipped_no_recipient", subject=subject)
            return False
        if not self.smtp_host:
            logger.warning("email_send_skipped_smtp_not_configured", to=to)
            return False

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = to
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        try:
            await asyncio.to_thread(self._deliver, [to], msg.as_string())
        except Exception as e:
            logger.error("email_send_failed", to=to, subject=subject, error=str(e))
            return False

        logger.info("email_sent", to=to, subject=subject)
        return True

    async def send_threshold_alert(self, to: str, alert: ThresholdAlert) -> bool:
        subject, html_body, text_body = render_threshold_alert(alert)
        return await self.send(to, subject, html_body, text_body)

    def _deliver(self, recipients: list[str], message: str) -> None:
        with smtplib.SMTP(
            self.smtp_host, self.smtp_port, timeout=self.timeout_seconds
        ) as server:
            if self.use_tls:
                server.starttls(context=ssl.create_default_context())
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            refused = server.sendmail(self.from_email, recipients, message)
        if refused:
            raise NotificationDeliveryError(
                "SMTP server refused recipients",
                details={"refused": sorted(refused)},
            )


def get_email_service() -> EmailService:
    settings = get_settings()
    return EmailService(
        smtp_host=settings.SMTP_HOST,
        smtp_port=settings.SMTP_PORT,
        smtp_user=settings.SMTP_USER,
        smtp_password=settings.SMTP_PASSWORD,
        from_email=settings.SMTP_FROM,
        use_tls=settings.SMTP_USE_TLS,
        timeout_seconds=settings.SMTP_TIMEOUT_SECONDS,
    )
