"""Notification transports — email over SMTP, Slack incoming webhooks.

A transport returns True when the message was handed off and False when
delivery failed. Failures are logged here; nothing is retried.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol

import httpx

from .store import Channel

logger = logging.getLogger(__name__)


class Transport(Protocol):
    channel: Channel

    async def send(self, recipients: list[str], subject: str, body: str) -> bool: ...


class EmailTransport:
    """SMTP sender; the blocking smtplib call runs in the default executor."""

    channel = Channel.EMAIL

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        sender: str = "healthwatch@localhost",
        use_tls: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.use_tls = use_tls
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.host)

    async def send(self, recipients: list[str], subject: str, body: str) -> bool:
        if not self.is_configured:
            logger.warning("Email transport not configured; dropping %r", subject)
            return False
        if not recipients:
            return False
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._send_sync, recipients, subject, body)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("Email notification failed: %s", exc)
            return False
        return True

    def _send_sync(self, recipients: list[str], subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = ", ".join(recipients)
        msg.set_content(body)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(msg)


class SlackTransport:
    """POST to a Slack incoming webhook. Recipients are ignored."""

    channel = Channel.SLACK

    def __init__(self, webhook_url: str, slack_channel: str = "", timeout: float = 10.0) -> None:
        self.webhook_url = webhook_url
        self.slack_channel = slack_channel
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    async def send(self, recipients: list[str], subject: str, body: str) -> bool:
        if not self.is_configured:
            return False
        payload: dict[str, object] = {"text": f"*{subject}*\n{body}", "mrkdwn": True}
        if self.slack_channel:
            payload["channel"] = self.slack_channel
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.webhook_url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("Slack notification failed: %s", exc)
            return False
        if resp.status_code != 200:
            logger.warning("Slack webhook returned %d: %s", resp.status_code, resp.text[:200])
            return False
        return True
