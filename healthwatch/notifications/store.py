"""Subscriptions and the notification audit log, stored in SQLite."""

from __future__ import annotations

import json
import logging
import secrets
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from healthwatch.checks.models import format_ts, new_id, parse_ts, utcnow
from healthwatch.incidents.store import Severity
from healthwatch.store.sqlite import SqliteDatabase

logger = logging.getLogger(__name__)


class Channel(str, Enum):
    EMAIL = "email"
    SLACK = "slack"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


class DuplicateSubscriptionError(ValueError):
    def __init__(self, email: str, check_id: str | None) -> None:
        scope = check_id or "all checks"
        super().__init__(f"{email} is already subscribed to {scope}")
        self.email = email
        self.check_id = check_id


def _token() -> str:
    return secrets.token_urlsafe(24)


@dataclass
class Subscription:
    email: str
    check_id: str | None = None  # None → every check
    severity: Severity = Severity.ALL
    active: bool = True
    verify_token: str = field(default_factory=_token)
    unsubscribe_token: str = field(default_factory=_token)
    verified_at: datetime | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def verified(self) -> bool:
        return self.verified_at is not None

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            # NULL never collides in a unique index, so global rows use ''
            "check_id": self.check_id or "",
            "severity": self.severity.value,
            "active": int(self.active),
            "verify_token": self.verify_token,
            "unsubscribe_token": self.unsubscribe_token,
            "verified_at": format_ts(self.verified_at),
            "created_at": format_ts(self.created_at),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Subscription:
        return cls(
            id=row["id"],
            email=row["email"],
            check_id=row.get("check_id") or None,
            severity=Severity(row.get("severity", "all")),
            active=bool(row.get("active", 1)),
            verify_token=row["verify_token"],
            unsubscribe_token=row["unsubscribe_token"],
            verified_at=parse_ts(row.get("verified_at")),
            created_at=parse_ts(row.get("created_at")) or utcnow(),
        )


@dataclass
class NotificationRecord:
    channel: Channel
    subject: str
    content: str
    recipients: list[str]
    status: DeliveryStatus
    check_id: str | None = None
    severity: Severity = Severity.HIGH
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "channel": self.channel.value,
            "subject": self.subject,
            "content": self.content,
            "recipients": json.dumps(self.recipients),
            "status": self.status.value,
            "check_id": self.check_id,
            "severity": self.severity.value,
            "created_at": format_ts(self.created_at),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> NotificationRecord:
        return cls(
            id=row["id"],
            channel=Channel(row["channel"]),
            subject=row["subject"],
            content=row["content"],
            recipients=json.loads(row.get("recipients") or "[]"),
            status=DeliveryStatus(row["status"]),
            check_id=row.get("check_id"),
            severity=Severity(row.get("severity", "high")),
            created_at=parse_ts(row["created_at"]) or utcnow(),
        )


@dataclass
class NotificationPage:
    records: list[NotificationRecord]
    total: int
    page: int
    limit: int


class NotificationStore(SqliteDatabase):
    """SQLite-backed subscriptions + append-only notification history."""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS subscriptions (
            id                TEXT PRIMARY KEY,
            email             TEXT NOT NULL,
            check_id          TEXT NOT NULL DEFAULT '',
            severity          TEXT NOT NULL DEFAULT 'all',
            active            INTEGER NOT NULL DEFAULT 1,
            verify_token      TEXT NOT NULL UNIQUE,
            unsubscribe_token TEXT NOT NULL UNIQUE,
            verified_at       TEXT,
            created_at        TEXT NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_subscriptions_email_check
            ON subscriptions (email, check_id);

        CREATE TABLE IF NOT EXISTS notifications (
            id         TEXT PRIMARY KEY,
            channel    TEXT NOT NULL,
            subject    TEXT NOT NULL,
            content    TEXT NOT NULL,
            recipients TEXT NOT NULL DEFAULT '[]',
            status     TEXT NOT NULL,
            check_id   TEXT,
            severity   TEXT NOT NULL DEFAULT 'high',
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_notifications_channel
            ON notifications (channel, status, created_at DESC);
    """

    # ── Subscriptions ─────────────────────────────────────────────────────

    def add_subscription(self, sub: Subscription) -> Subscription:
        try:
            with self._conn() as conn:
                conn.execute(
                    "INSERT INTO subscriptions (id, email, check_id, severity, active, "
                    "verify_token, unsubscribe_token, verified_at, created_at) VALUES "
                    "(:id, :email, :check_id, :severity, :active, :verify_token, "
                    ":unsubscribe_token, :verified_at, :created_at)",
                    sub.to_row(),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateSubscriptionError(sub.email, sub.check_id) from exc
        return sub

    def get_subscription(self, sub_id: str) -> Subscription | None:
        return self._one("SELECT * FROM subscriptions WHERE id = ?", sub_id)

    def find_by_token(self, column: str, token: str) -> Subscription | None:
        if column not in ("verify_token", "unsubscribe_token"):
            raise ValueError(f"Not a token column: {column}")
        return self._one(f"SELECT * FROM subscriptions WHERE {column} = ?", token)

    def update_subscription(self, sub_id: str, **fields: Any) -> Subscription | None:
        allowed = {"severity", "active", "verified_at", "check_id"}
        updates: dict[str, Any] = {}
        for key, value in fields.items():
            if key not in allowed:
                continue
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, datetime):
                value = format_ts(value)
            elif isinstance(value, bool):
                value = int(value)
            elif key == "check_id":
                value = value or ""
            updates[key] = value
        if updates:
            set_clause = ", ".join(f"{k} = :{k}" for k in updates)
            updates["id"] = sub_id
            try:
                with self._conn() as conn:
                    conn.execute(f"UPDATE subscriptions SET {set_clause} WHERE id = :id", updates)
            except sqlite3.IntegrityError as exc:
                current = self.get_subscription(sub_id)
                raise DuplicateSubscriptionError(
                    current.email if current else "", fields.get("check_id"),
                ) from exc
        return self.get_subscription(sub_id)

    def delete_subscription(self, sub_id: str) -> bool:
        with self._conn() as conn:
            cursor = conn.execute("DELETE FROM subscriptions WHERE id = ?", (sub_id,))
        return cursor.rowcount > 0

    def subscriptions_for(self, email: str) -> list[Subscription]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM subscriptions WHERE email = ? ORDER BY created_at", (email,),
            ).fetchall()
        return [Subscription.from_row(dict(r)) for r in rows]

    def subscribers_for(self, check_id: str) -> list[Subscription]:
        """Active subscriptions for this check plus the global ones."""
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM subscriptions WHERE active = 1 "
                "AND (check_id = ? OR check_id = '') ORDER BY created_at",
                (check_id,),
            ).fetchall()
        return [Subscription.from_row(dict(r)) for r in rows]

    def _one(self, sql: str, *args: Any) -> Subscription | None:
        with self._conn() as conn:
            row = conn.execute(sql, args).fetchone()
        return Subscription.from_row(dict(row)) if row else None

    # ── History ───────────────────────────────────────────────────────────

    def record(self, rec: NotificationRecord) -> NotificationRecord:
        with self._conn() as conn:
            conn.execute(
                "INSERT INTO notifications (id, channel, subject, content, recipients, "
                "status, check_id, severity, created_at) VALUES (:id, :channel, :subject, "
                ":content, :recipients, :status, :check_id, :severity, :created_at)",
                rec.to_row(),
            )
        return rec

    def last_sent_at(self, channel: Channel) -> datetime | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT MAX(created_at) FROM notifications WHERE channel = ? AND status = ?",
                (Channel(channel).value, DeliveryStatus.SENT.value),
            ).fetchone()
        return parse_ts(row[0]) if row else None

    def list_records(
        self, page: int = 1, limit: int = 20, channel: Channel | None = None,
    ) -> NotificationPage:
        page = max(page, 1)
        where, args = "", []
        if channel is not None:
            where, args = " WHERE channel = ?", [Channel(channel).value]
        with self._conn() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM notifications{where}", args).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM notifications{where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                [*args, limit, (page - 1) * limit],
            ).fetchall()
        return NotificationPage(
            records=[NotificationRecord.from_row(dict(r)) for r in rows],
            total=total, page=page, limit=limit,
        )
