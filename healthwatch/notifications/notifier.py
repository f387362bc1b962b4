"""Notification routing — severity, recipients, throttling, audit log.

Failure alerts are throttled per channel: nothing is sent on a channel
whose last successful send is younger than ``throttle_minutes``.
Resolution notices bypass the throttle.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from healthwatch.checks.models import CheckDefinition, Outcome, utcnow
from healthwatch.incidents.store import Incident, Severity
from healthwatch.store.base import Store

from .store import (
    Channel,
    DeliveryStatus,
    NotificationPage,
    NotificationRecord,
    NotificationStore,
    Subscription,
)
from .transports import Transport

logger = logging.getLogger(__name__)


class Notifier:
    """Routes check failures and recoveries to subscribers over every transport."""

    def __init__(
        self,
        store: NotificationStore,
        checks: Store,
        transports: Iterable[Transport] = (),
        throttle_minutes: int = 60,
        default_recipients: Iterable[str] = (),
        critical_unhealthy_count: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.checks = checks
        self.transports = list(transports)
        self.throttle = timedelta(minutes=throttle_minutes)
        self.default_recipients = list(default_recipients)
        self.critical_unhealthy_count = critical_unhealthy_count
        self._clock = clock

    # ── Severity & recipients ─────────────────────────────────────────────

    def classify(self, outcome: Outcome, incident: Incident | None = None) -> Severity:
        if outcome.healthy:
            return Severity.ALL
        enabled = {c.id for c in self.checks.find_all(enabled=True)}
        unhealthy = sum(
            1 for r in self.checks.get_latest_results()
            if r.check_id in enabled and not r.healthy
        )
        derived = Severity.CRITICAL if unhealthy > self.critical_unhealthy_count else Severity.HIGH
        if incident is not None and incident.severity.rank > derived.rank:
            return incident.severity
        return derived

    def recipients(self, check_id: str, severity: Severity) -> list[str]:
        """Check-specific and global subscribers whose filter admits ``severity``."""
        emails: list[str] = []
        for sub in self.store.subscribers_for(check_id):
            if severity.rank >= sub.severity.rank and sub.email not in emails:
                emails.append(sub.email)
        return emails or list(self.default_recipients)

    def is_throttled(self, channel: Channel) -> bool:
        last = self.store.last_sent_at(channel)
        return last is not None and self._clock() - last < self.throttle

    # ── Dispatch ──────────────────────────────────────────────────────────

    async def notify(
        self,
        check: CheckDefinition,
        outcome: Outcome,
        incident: Incident | None = None,
        resolved: bool = False,
    ) -> list[NotificationRecord]:
        """Send a failure alert, or a resolution notice when ``resolved``."""
        if not resolved and not check.notify_on_failure:
            return []

        if resolved:
            severity = incident.severity if incident else Severity.HIGH
            subject = f"[RESOLVED] {check.name} is healthy again"
        else:
            severity = self.classify(outcome, incident)
            subject = f"[{severity.value.upper()}] {check.name} is unhealthy"
        body = _render(check, outcome, incident, resolved)

        records: list[NotificationRecord] = []
        for transport in self.transports:
            if not getattr(transport, "is_configured", True):
                continue
            channel = Channel(transport.channel)
            if not resolved and self.is_throttled(channel):
                logger.info("Throttled %s notification for %s", channel.value, check.name)
                continue

            if channel == Channel.EMAIL:
                to = self.recipients(check.id, severity)
                if not to:
                    logger.debug("No recipients for %s; skipping email", check.name)
                    continue
            else:
                to = []

            records.append(
                await self._deliver(transport, channel, to, subject, body, check.id, severity)
            )
        return records

    async def _deliver(
        self,
        transport: Transport,
        channel: Channel,
        to: list[str],
        subject: str,
        body: str,
        check_id: str | None,
        severity: Severity,
    ) -> NotificationRecord:
        try:
            ok = await transport.send(to, subject, body)
        except Exception as exc:
            logger.warning("%s transport raised: %s", channel.value, exc)
            ok = False
        status = DeliveryStatus.SENT if ok else DeliveryStatus.FAILED
        record = NotificationRecord(
            channel=channel, subject=subject, content=body, recipients=to,
            status=status, check_id=check_id, severity=severity, created_at=self._clock(),
        )
        self.store.record(record)
        if not ok:
            logger.warning("Failed to deliver %s notification %r", channel.value, subject)
        return record

    def history(
        self, page: int = 1, limit: int = 20, channel: Channel | None = None,
    ) -> NotificationPage:
        return self.store.list_records(page=page, limit=limit, channel=channel)

    # ── Subscriptions ─────────────────────────────────────────────────────

    async def subscribe(
        self,
        email: str,
        check_id: str | None = None,
        severity: Severity | str = Severity.ALL,
    ) -> Subscription:
        """Create a subscription and mail its verification token."""
        email = email.strip().lower()
        if "@" not in email:
            raise ValueError(f"Invalid email address: {email!r}")
        if check_id is not None and self.checks.find_by_id(check_id) is None:
            raise KeyError(f"Check {check_id} not found")

        sub = self.store.add_subscription(
            Subscription(email=email, check_id=check_id, severity=Severity(severity)),
        )
        email_transport = self._transport(Channel.EMAIL)
        if email_transport is not None:
            body = (
                "Confirm your health alert subscription with this token:\n"
                f"  {sub.verify_token}\n\n"
                "To stop receiving alerts, use:\n"
                f"  {sub.unsubscribe_token}\n"
            )
            try:
                await email_transport.send([email], "Confirm your subscription", body)
            except Exception as exc:
                logger.warning("Verification email to %s failed: %s", email, exc)
        return sub

    def verify(self, token: str) -> Subscription | None:
        sub = self.store.find_by_token("verify_token", token)
        if sub is None:
            return None
        if sub.verified:
            return sub
        return self.store.update_subscription(sub.id, verified_at=self._clock(), active=True)

    def unsubscribe(self, token: str) -> Subscription | None:
        sub = self.store.find_by_token("unsubscribe_token", token)
        if sub is None:
            return None
        return self.store.update_subscription(sub.id, active=False)

    def update_subscription(
        self,
        sub_id: str,
        severity: Severity | str | None = None,
        active: bool | None = None,
    ) -> Subscription | None:
        fields: dict[str, object] = {}
        if severity is not None:
            fields["severity"] = Severity(severity)
        if active is not None:
            fields["active"] = active
        return self.store.update_subscription(sub_id, **fields)

    def delete_subscription(self, sub_id: str) -> bool:
        return self.store.delete_subscription(sub_id)

    def subscriptions_for(self, email: str) -> list[Subscription]:
        return self.store.subscriptions_for(email.strip().lower())

    def _transport(self, channel: Channel) -> Transport | None:
        for transport in self.transports:
            if transport.channel == channel and getattr(transport, "is_configured", True):
                return transport
        return None


def _render(
    check: CheckDefinition, outcome: Outcome, incident: Incident | None, resolved: bool,
) -> str:
    lines = [
        f"Check: {check.name} ({check.kind.value})",
        f"Status: {outcome.status.value}",
        f"Details: {outcome.details}",
    ]
    if outcome.latency_ms is not None:
        lines.append(f"Latency: {outcome.latency_ms:.0f}ms")
    if incident is not None:
        state = "resolved" if resolved else incident.status.value
        lines.append(f"Incident: {incident.id} ({state}, severity {incident.severity.value})")
    return "\n".join(lines)
