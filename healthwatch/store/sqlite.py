"""SQLite primary store for check definitions and results.

Connections are opened per call so the store can be used from the event
loop and from worker threads alike. Any sqlite failure other than an
integrity violation surfaces as ``StoreUnavailable``.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from healthwatch.checks.models import (
    MUTABLE_FIELDS,
    CheckDefinition,
    CheckKind,
    CheckResult,
    ResultPage,
    format_ts,
    utcnow,
)

from .base import DuplicateCheckError, StoreUnavailable

logger = logging.getLogger(__name__)


class SqliteDatabase:
    """Shared connection handling for the SQLite-backed stores."""

    SCHEMA = ""

    def __init__(self, db_path: Path | str, timeout: float = 5.0) -> None:
        self._db_path = Path(db_path)
        self._timeout = timeout
        self._schema_ready = False

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success, map failures to StoreUnavailable."""
        conn: sqlite3.Connection | None = None
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self._db_path), timeout=self._timeout)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            if not self._schema_ready:
                conn.executescript(self.SCHEMA)
                self._schema_ready = True
            with conn:
                yield conn
        except sqlite3.IntegrityError:
            raise
        except (sqlite3.Error, OSError) as exc:
            raise StoreUnavailable(f"{self._db_path}: {exc}") from exc
        finally:
            if conn is not None:
                conn.close()

    def ping(self) -> None:
        """Raise StoreUnavailable unless the database answers."""
        with self._conn() as conn:
            conn.execute("SELECT 1").fetchone()


class SqliteStore(SqliteDatabase):
    """Durable implementation of the Store contract."""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS checks (
            id                    TEXT PRIMARY KEY,
            name                  TEXT NOT NULL,
            kind                  TEXT NOT NULL,
            enabled               INTEGER NOT NULL DEFAULT 1,
            interval_seconds      INTEGER NOT NULL DEFAULT 300,
            endpoint              TEXT NOT NULL DEFAULT '',
            timeout_ms            INTEGER NOT NULL DEFAULT 5000,
            process_keyword       TEXT NOT NULL DEFAULT '',
            port                  INTEGER,
            custom_command        TEXT NOT NULL DEFAULT '',
            expected_output       TEXT NOT NULL DEFAULT '',
            log_file_path         TEXT NOT NULL DEFAULT '',
            log_freshness_seconds INTEGER NOT NULL DEFAULT 3600,
            log_max_size_mb       REAL NOT NULL DEFAULT 100,
            log_error_patterns    TEXT NOT NULL DEFAULT '[]',
            restart_command       TEXT NOT NULL DEFAULT '',
            restart_threshold     INTEGER,
            notify_on_failure     INTEGER NOT NULL DEFAULT 1,
            consecutive_failures  INTEGER NOT NULL DEFAULT 0,
            last_success_at       TEXT,
            created_at            TEXT NOT NULL,
            updated_at            TEXT NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_checks_natural
            ON checks (name, kind);

        CREATE TABLE IF NOT EXISTS check_results (
            id           TEXT PRIMARY KEY,
            check_id     TEXT NOT NULL,
            status       TEXT NOT NULL,
            details      TEXT NOT NULL DEFAULT '',
            cpu_usage    REAL,
            memory_usage REAL,
            latency_ms   REAL,
            extra        TEXT,
            created_at   TEXT NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_results_natural
            ON check_results (check_id, created_at);
    """

    _CHECK_COLUMNS = (
        "id", "name", "kind", "enabled", "interval_seconds", "endpoint",
        "timeout_ms", "process_keyword", "port", "custom_command",
        "expected_output", "log_file_path", "log_freshness_seconds",
        "log_max_size_mb", "log_error_patterns", "restart_command",
        "restart_threshold", "notify_on_failure", "consecutive_failures",
        "last_success_at", "created_at", "updated_at",
    )

    # ── Check definitions ─────────────────────────────────────────────────

    def create(self, check: CheckDefinition) -> CheckDefinition:
        cols = ", ".join(self._CHECK_COLUMNS)
        params = ", ".join(f":{c}" for c in self._CHECK_COLUMNS)
        try:
            with self._conn() as conn:
                conn.execute(f"INSERT INTO checks ({cols}) VALUES ({params})", check.to_row())
        except sqlite3.IntegrityError as exc:
            raise DuplicateCheckError(check.name, check.kind) from exc
        return check

    def find_by_id(self, check_id: str) -> CheckDefinition | None:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM checks WHERE id = ?", (check_id,)).fetchone()
        return CheckDefinition.from_row(dict(row)) if row else None

    def find_by_key(self, name: str, kind: CheckKind | str) -> CheckDefinition | None:
        kind_value = CheckKind(kind).value
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM checks WHERE name = ? AND kind = ?", (name, kind_value),
            ).fetchone()
        return CheckDefinition.from_row(dict(row)) if row else None

    def find_all(
        self, enabled: bool | None = None, kind: CheckKind | None = None,
    ) -> list[CheckDefinition]:
        clauses: list[str] = []
        args: list[Any] = []
        if enabled is not None:
            clauses.append("enabled = ?")
            args.append(int(enabled))
        if kind is not None:
            clauses.append("kind = ?")
            args.append(CheckKind(kind).value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._conn() as conn:
            rows = conn.execute(f"SELECT * FROM checks{where} ORDER BY name", args).fetchall()
        return [CheckDefinition.from_row(dict(r)) for r in rows]

    def update(self, check_id: str, **fields: Any) -> CheckDefinition | None:
        """Update specific fields of a check; returns None if it does not exist."""
        current = self.find_by_id(check_id)
        if not current:
            return None

        updates = {k: _to_column(k, v) for k, v in fields.items() if k in MUTABLE_FIELDS}
        if not updates:
            return current

        updates["updated_at"] = format_ts(utcnow())
        set_clause = ", ".join(f"{k} = :{k}" for k in updates)
        updates["id"] = check_id
        try:
            with self._conn() as conn:
                conn.execute(f"UPDATE checks SET {set_clause} WHERE id = :id", updates)
        except sqlite3.IntegrityError as exc:
            raise DuplicateCheckError(fields.get("name", current.name), current.kind) from exc
        return self.find_by_id(check_id)

    def delete(self, check_id: str) -> bool:
        with self._conn() as conn:
            cursor = conn.execute("DELETE FROM checks WHERE id = ?", (check_id,))
            conn.execute("DELETE FROM check_results WHERE check_id = ?", (check_id,))
        return cursor.rowcount > 0

    # ── Results ───────────────────────────────────────────────────────────

    def save_result(self, result: CheckResult) -> CheckResult:
        with self._conn() as conn:
            conn.execute(
                "INSERT INTO check_results "
                "(id, check_id, status, details, cpu_usage, memory_usage, latency_ms, extra, created_at) "
                "VALUES (:id, :check_id, :status, :details, :cpu_usage, :memory_usage, "
                ":latency_ms, :extra, :created_at)",
                result.to_row(),
            )
        return result

    def get_latest_results(self) -> list[CheckResult]:
        """Latest result for every check."""
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT cr.* FROM check_results cr "
                "INNER JOIN ("
                "  SELECT check_id, MAX(created_at) AS max_ts "
                "  FROM check_results GROUP BY check_id"
                ") latest ON cr.check_id = latest.check_id "
                "AND cr.created_at = latest.max_ts "
                "ORDER BY cr.check_id",
            ).fetchall()
        return [CheckResult.from_row(dict(r)) for r in rows]

    def get_results_by_check(
        self, check_id: str, page: int = 1, limit: int = 20,
    ) -> ResultPage:
        page = max(page, 1)
        with self._conn() as conn:
            total = conn.execute(
                "SELECT COUNT(*) FROM check_results WHERE check_id = ?", (check_id,),
            ).fetchone()[0]
            rows = conn.execute(
                "SELECT * FROM check_results WHERE check_id = ? "
                "ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                (check_id, limit, (page - 1) * limit),
            ).fetchall()
        return ResultPage(
            results=[CheckResult.from_row(dict(r)) for r in rows],
            total=total, page=page, limit=limit,
        )

    def trim_results(self, days: int) -> int:
        """Remove results older than N days."""
        cutoff = format_ts(datetime.now(timezone.utc) - timedelta(days=days))
        with self._conn() as conn:
            cursor = conn.execute("DELETE FROM check_results WHERE created_at < ?", (cutoff,))
        return cursor.rowcount

    # ── Reconciliation (natural-key upserts) ──────────────────────────────

    def upsert_check(self, check: CheckDefinition) -> CheckDefinition:
        """Insert or update ``check`` keyed by name+kind, falling back to id.

        The id match only applies when the name+kind is new to the primary,
        i.e. the check was renamed while the primary was unreachable.
        Returns the primary's row, whose id may differ from ``check.id``.
        """
        target = self.find_by_key(check.name, check.kind) or self.find_by_id(check.id)
        if target is None:
            return self.create(check)

        row = check.to_row()
        fields = {k: row[k] for k in self._CHECK_COLUMNS if k not in ("id", "created_at")}
        set_clause = ", ".join(f"{k} = :{k}" for k in fields)
        fields["target_id"] = target.id
        with self._conn() as conn:
            conn.execute(f"UPDATE checks SET {set_clause} WHERE id = :target_id", fields)
        return self.find_by_id(target.id) or check

    def upsert_result(self, result: CheckResult) -> bool:
        """Insert ``result`` unless (check_id, created_at) is already present."""
        with self._conn() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO check_results "
                "(id, check_id, status, details, cpu_usage, memory_usage, latency_ms, extra, created_at) "
                "VALUES (:id, :check_id, :status, :details, :cpu_usage, :memory_usage, "
                ":latency_ms, :extra, :created_at)",
                result.to_row(),
            )
        return cursor.rowcount > 0

    def delete_by_key(self, name: str, kind: CheckKind | str) -> bool:
        existing = self.find_by_key(name, kind)
        if existing is None:
            return False
        return self.delete(existing.id)


def _to_column(key: str, value: Any) -> Any:
    if key in ("enabled", "notify_on_failure"):
        return int(bool(value))
    if key == "log_error_patterns":
        return json.dumps(list(value or []))
    if isinstance(value, datetime):
        return format_ts(value)
    return value
