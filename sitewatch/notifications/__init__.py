"""Run alerts — Slack, Telegram and email.

Fires after a run has been persisted:
- failures, when ``alerts.send_on_failure`` is set
- all-clear reports, when ``alerts.send_on_success`` is set

Every channel is best-effort: delivery errors are logged and dropped so a
failed alert can never fail the run that triggered it.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from enum import Enum
from typing import Any

import httpx

from ..config import AlertsConfig, Settings, SmtpConfig
from ..runs.models import Run

logger = logging.getLogger(__name__)


class NotifyLevel(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    RECOVERY = "recovery"


_EMOJI = {
    NotifyLevel.CRITICAL: "🔴",
    NotifyLevel.WARNING: "⚠️",
    NotifyLevel.RECOVERY: "✅",
}

_SLACK_COLORS = {
    NotifyLevel.CRITICAL: "#d50200",
    NotifyLevel.WARNING: "#de9e31",
    NotifyLevel.RECOVERY: "#2eb886",
}


def alert_level(run: Run) -> NotifyLevel:
    """CRITICAL when a critical check failed, WARNING for other failures."""
    if any(r.is_critical_failure for r in run.results):
        return NotifyLevel.CRITICAL
    if run.failed_tests > 0:
        return NotifyLevel.WARNING
    return NotifyLevel.RECOVERY


class NotificationManager:
    """Dispatches run alerts to every configured channel."""

    def __init__(
        self,
        alerts: AlertsConfig | None = None,
        smtp: SmtpConfig | None = None,
        slack_webhook: str = "",
        telegram_token: str = "",
        telegram_chat_id: str = "",
    ) -> None:
        self.alerts = alerts or AlertsConfig()
        self.smtp = smtp or SmtpConfig()
        self.slack_webhook = slack_webhook
        self.telegram_token = telegram_token
        self.telegram_chat_id = telegram_chat_id

    @classmethod
    def from_settings(cls, settings: Settings) -> "NotificationManager":
        return cls(
            alerts=settings.alerts,
            smtp=settings.smtp,
            slack_webhook=settings.slack_webhook_url,
            telegram_token=settings.telegram_bot_token,
            telegram_chat_id=settings.telegram_chat_id,
        )

    @property
    def email_enabled(self) -> bool:
        return bool(self.smtp.host and self.smtp.user and self.alerts.recipients)

    @property
    def is_enabled(self) -> bool:
        return bool(
            self.slack_webhook
            or (self.telegram_token and self.telegram_chat_id)
            or self.email_enabled
        )

    def status(self) -> dict[str, Any]:
        return {
            "enabled": self.is_enabled,
            "slack_configured": bool(self.slack_webhook),
            "telegram_configured": bool(self.telegram_token and self.telegram_chat_id),
            "email_configured": self.email_enabled,
        }

    def should_alert(self, run: Run) -> bool:
        if run.failed_tests > 0:
            return self.alerts.send_on_failure
        return self.alerts.send_on_success

    # -- High-level notification methods ------------------------------------

    async def notify_run_result(self, run: Run) -> None:
        """Send a failure alert or success report for a finished run."""
        level = alert_level(run)
        if level == NotifyLevel.RECOVERY:
            subject = "Website monitoring report: all checks passed"
        else:
            subject = f"WEBSITE ALERT: {run.failed_tests} check(s) failed"

        lines = [
            f"Run: #{run.id if run.id is not None else '?'} ({run.triggered_by}) at {run.timestamp}",
            f"Passed {run.passed_tests}/{run.total_tests} — success rate {run.success_rate}%",
        ]
        for r in run.results:
            if r.status.value != "PASS":
                flag = " (critical)" if r.critical else ""
                lines.append(f"• {r.name}{flag}: {r.status.value} — {r.error or r.details}"[:300])

        await self._send(level, subject, "\n".join(lines) + "\n")

    # -- Low-level dispatch -------------------------------------------------

    async def _send(self, level: NotifyLevel, subject: str, body: str) -> None:
        if not self.is_enabled:
            logger.warning("Alerts not configured, skipping")
            return
        tasks = []
        if self.slack_webhook:
            tasks.append(self._send_slack(level, subject, body))
        if self.telegram_token and self.telegram_chat_id:
            tasks.append(self._send_telegram(level, subject, body))
        if self.email_enabled:
            tasks.append(self._send_email(f"{_EMOJI[level]} {subject}", body))
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _send_slack(self, level: NotifyLevel, subject: str, body: str) -> None:
        """Incoming webhook; the attachment colour follows the alert level."""
        await self._post("Slack", self.slack_webhook, {
            "text": f"{_EMOJI[level]} *{subject}*",
            "attachments": [{"color": _SLACK_COLORS[level], "text": body, "mrkdwn_in": ["text"]}],
        })

    async def _send_telegram(self, level: NotifyLevel, subject: str, body: str) -> None:
        # All-clear reports arrive silently
        await self._post(
            "Telegram",
            f"https://api.telegram.org/bot{self.telegram_token}/sendMessage",
            {
                "chat_id": self.telegram_chat_id,
                "text": f"{_EMOJI[level]} *{subject}*\n{body}",
                "parse_mode": "Markdown",
                "disable_notification": level == NotifyLevel.RECOVERY,
            },
        )

    async def _post(self, channel: str, url: str, payload: dict[str, Any]) -> None:
        try:
            async with httpx.AsyncClient(timeout=10) as client:
                resp = await client.post(url, json=payload)
            if resp.status_code != 200:
                logger.warning("%s returned %d: %s", channel, resp.status_code, resp.text[:200])
        except httpx.HTTPError as exc:
            logger.warning("%s notification failed: %s", channel, exc)

    async def _send_email(self, subject: str, text: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._deliver_email, subject, text)
            logger.info("Alert email sent to %d recipient(s)", len(self.alerts.recipients))
        except Exception as exc:
            logger.warning("Email notification failed: %s", exc)

    def _deliver_email(self, subject: str, text: str) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"Website Monitor <{self.smtp.user}>"
        msg["To"] = ", ".join(self.alerts.recipients)
        msg.set_content(text)

        with smtplib.SMTP(self.smtp.host, self.smtp.port, timeout=30) as server:
            if self.smtp.use_tls:
                server.starttls()
            if self.smtp.password:
                server.login(self.smtp.user, self.smtp.password)
            server.send_message(msg)
