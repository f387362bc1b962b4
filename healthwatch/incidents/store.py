"""Incident storage — SQLite-backed incidents and their event timelines.

Status flow: investigating → identified → monitoring → resolved
At most one non-resolved incident per check, enforced by a partial
unique index.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from healthwatch.checks.models import format_ts, new_id, parse_ts, utcnow
from healthwatch.store.sqlite import SqliteDatabase

logger = logging.getLogger(__name__)


class IncidentStatus(str, Enum):
    INVESTIGATING = "investigating"
    IDENTIFIED = "identified"
    MONITORING = "monitoring"
    RESOLVED = "resolved"


class Severity(str, Enum):
    """Alert severity; also the subscriber filter (all < high < critical)."""

    ALL = "all"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.ALL: 0, Severity.HIGH: 1, Severity.CRITICAL: 2}


class DuplicateOpenIncidentError(Exception):
    """Another open incident already exists for the check."""


@dataclass
class Incident:
    check_id: str
    title: str
    status: IncidentStatus = IncidentStatus.INVESTIGATING
    severity: Severity = Severity.HIGH
    details: str = ""
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    resolved_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status != IncidentStatus.RESOLVED

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "check_id": self.check_id,
            "title": self.title,
            "status": self.status.value,
            "severity": self.severity.value,
            "details": self.details,
            "created_at": format_ts(self.created_at),
            "updated_at": format_ts(self.updated_at),
            "resolved_at": format_ts(self.resolved_at),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Incident:
        return cls(
            id=row["id"],
            check_id=row["check_id"],
            title=row.get("title", ""),
            status=IncidentStatus(row["status"]),
            severity=Severity(row.get("severity", "high")),
            details=row.get("details") or "",
            created_at=parse_ts(row["created_at"]) or utcnow(),
            updated_at=parse_ts(row["updated_at"]) or utcnow(),
            resolved_at=parse_ts(row.get("resolved_at")),
        )


@dataclass
class IncidentEvent:
    incident_id: str
    message: str
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class IncidentPage:
    incidents: list[Incident]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.limit) if self.limit else 0


class IncidentStore(SqliteDatabase):
    """SQLite-backed incident + event storage."""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS incidents (
            id          TEXT PRIMARY KEY,
            check_id    TEXT NOT NULL,
            title       TEXT NOT NULL DEFAULT '',
            status      TEXT NOT NULL,
            severity    TEXT NOT NULL DEFAULT 'high',
            details     TEXT NOT NULL DEFAULT '',
            created_at  TEXT NOT NULL,
            updated_at  TEXT NOT NULL,
            resolved_at TEXT
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_incidents_one_open
            ON incidents (check_id) WHERE status != 'resolved';

        CREATE INDEX IF NOT EXISTS idx_incidents_created
            ON incidents (created_at DESC);

        CREATE TABLE IF NOT EXISTS incident_events (
            id          TEXT PRIMARY KEY,
            incident_id TEXT NOT NULL,
            message     TEXT NOT NULL,
            created_at  TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_incident_events
            ON incident_events (incident_id, created_at);
    """

    def create(self, incident: Incident) -> Incident:
        try:
            with self._conn() as conn:
                conn.execute(
                    "INSERT INTO incidents (id, check_id, title, status, severity, details, "
                    "created_at, updated_at, resolved_at) VALUES (:id, :check_id, :title, "
                    ":status, :severity, :details, :created_at, :updated_at, :resolved_at)",
                    incident.to_row(),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateOpenIncidentError(incident.check_id) from exc
        return incident

    def get(self, incident_id: str) -> Incident | None:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM incidents WHERE id = ?", (incident_id,)).fetchone()
        return Incident.from_row(dict(row)) if row else None

    def find_open(self, check_id: str) -> Incident | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM incidents WHERE check_id = ? AND status != 'resolved'",
                (check_id,),
            ).fetchone()
        return Incident.from_row(dict(row)) if row else None

    def list_active(self) -> list[Incident]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM incidents WHERE status != 'resolved' ORDER BY created_at DESC",
            ).fetchall()
        return [Incident.from_row(dict(r)) for r in rows]

    def list_all(
        self, page: int = 1, limit: int = 10, status: IncidentStatus | None = None,
        check_id: str | None = None,
    ) -> IncidentPage:
        page = max(page, 1)
        clauses: list[str] = []
        args: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            args.append(IncidentStatus(status).value)
        if check_id is not None:
            clauses.append("check_id = ?")
            args.append(check_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._conn() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM incidents{where}", args).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM incidents{where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                [*args, limit, (page - 1) * limit],
            ).fetchall()
        return IncidentPage(
            incidents=[Incident.from_row(dict(r)) for r in rows],
            total=total, page=page, limit=limit,
        )

    def update(self, incident_id: str, **fields: Any) -> Incident | None:
        allowed = {"title", "status", "severity", "details", "resolved_at"}
        updates: dict[str, Any] = {}
        for key, value in fields.items():
            if key not in allowed:
                continue
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, datetime):
                value = format_ts(value)
            updates[key] = value
        if not updates:
            return self.get(incident_id)

        updates["updated_at"] = format_ts(utcnow())
        set_clause = ", ".join(f"{k} = :{k}" for k in updates)
        updates["id"] = incident_id
        with self._conn() as conn:
            conn.execute(f"UPDATE incidents SET {set_clause} WHERE id = :id", updates)
        return self.get(incident_id)

    def add_event(self, event: IncidentEvent) -> IncidentEvent:
        with self._conn() as conn:
            conn.execute(
                "INSERT INTO incident_events (id, incident_id, message, created_at) "
                "VALUES (?, ?, ?, ?)",
                (event.id, event.incident_id, event.message, format_ts(event.created_at)),
            )
        return event

    def get_events(self, incident_id: str) -> list[IncidentEvent]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM incident_events WHERE incident_id = ? "
                "ORDER BY created_at, rowid",
                (incident_id,),
            ).fetchall()
        return [
            IncidentEvent(
                id=r["id"], incident_id=r["incident_id"], message=r["message"],
                created_at=parse_ts(r["created_at"]) or utcnow(),
            )
            for r in rows
        ]

    def metrics(self) -> dict[str, Any]:
        """Totals plus mean time to resolution in minutes."""
        with self._conn() as conn:
            rows = conn.execute("SELECT status, created_at, resolved_at FROM incidents").fetchall()
        resolved_minutes = []
        for r in rows:
            if r["status"] == IncidentStatus.RESOLVED.value and r["resolved_at"]:
                started = parse_ts(r["created_at"])
                ended = parse_ts(r["resolved_at"])
                if started and ended:
                    resolved_minutes.append((ended - started).total_seconds() / 60)
        active = sum(1 for r in rows if r["status"] != IncidentStatus.RESOLVED.value)
        mttr = round(sum(resolved_minutes) / len(resolved_minutes), 1) if resolved_minutes else 0.0
        return {
            "total": len(rows),
            "active": active,
            "resolved": len(rows) - active,
            "mttr_minutes": mttr,
        }
