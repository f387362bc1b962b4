"""Check definitions, probe outcomes and persisted results."""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def parse_ts(value: Any) -> datetime | None:
    """Accept an ISO string or datetime; naive values are treated as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def format_ts(value: datetime | None) -> str | None:
    return value.astimezone(timezone.utc).isoformat() if value else None


class CheckKind(str, Enum):
    API = "API"
    PROCESS = "PROCESS"
    SERVICE = "SERVICE"
    SERVER = "SERVER"
    LOG = "LOG"


class Health(str, Enum):
    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"


# ── Definitions ──────────────────────────────────────────────────────────────


@dataclass
class CheckDefinition:
    """A configured check. Unique by (name, kind)."""

    name: str
    kind: CheckKind
    id: str = field(default_factory=new_id)
    enabled: bool = True
    interval_seconds: int = 300

    # API
    endpoint: str = ""
    timeout_ms: int = 5_000

    # Process
    process_keyword: str = ""
    port: int | None = None

    # Service
    custom_command: str = ""
    expected_output: str = ""

    # Log
    log_file_path: str = ""
    log_freshness_seconds: int = 3_600
    log_max_size_mb: float = 100.0
    log_error_patterns: list[str] = field(default_factory=list)

    # Restart
    restart_command: str = ""
    restart_threshold: int | None = None  # None → settings default

    notify_on_failure: bool = True

    # Runtime state, mutated through the store
    consecutive_failures: int = 0
    last_success_at: datetime | None = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.kind = CheckKind(self.kind)

    @property
    def natural_key(self) -> tuple[str, str]:
        return (self.name, self.kind.value)

    def to_row(self) -> dict[str, Any]:
        d = asdict(self)
        d["kind"] = self.kind.value
        d["enabled"] = int(self.enabled)
        d["notify_on_failure"] = int(self.notify_on_failure)
        d["log_error_patterns"] = json.dumps(self.log_error_patterns)
        d["last_success_at"] = format_ts(self.last_success_at)
        d["created_at"] = format_ts(self.created_at)
        d["updated_at"] = format_ts(self.updated_at)
        return d

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> CheckDefinition:
        patterns = row.get("log_error_patterns") or []
        if isinstance(patterns, str):
            try:
                patterns = json.loads(patterns)
            except ValueError:
                patterns = []
        return cls(
            id=row["id"],
            name=row["name"],
            kind=CheckKind(row["kind"]),
            enabled=bool(row.get("enabled", 1)),
            interval_seconds=row.get("interval_seconds", 300),
            endpoint=row.get("endpoint") or "",
            timeout_ms=row.get("timeout_ms", 5_000),
            process_keyword=row.get("process_keyword") or "",
            port=row.get("port"),
            custom_command=row.get("custom_command") or "",
            expected_output=row.get("expected_output") or "",
            log_file_path=row.get("log_file_path") or "",
            log_freshness_seconds=row.get("log_freshness_seconds", 3_600),
            log_max_size_mb=row.get("log_max_size_mb", 100.0),
            log_error_patterns=list(patterns),
            restart_command=row.get("restart_command") or "",
            restart_threshold=row.get("restart_threshold"),
            notify_on_failure=bool(row.get("notify_on_failure", 1)),
            consecutive_failures=row.get("consecutive_failures", 0),
            last_success_at=parse_ts(row.get("last_success_at")),
            created_at=parse_ts(row.get("created_at")) or utcnow(),
            updated_at=parse_ts(row.get("updated_at")) or utcnow(),
        )


# Fields callers may change through Store.update()
MUTABLE_FIELDS = frozenset({
    "name", "enabled", "interval_seconds", "endpoint", "timeout_ms",
    "process_keyword", "port", "custom_command", "expected_output",
    "log_file_path", "log_freshness_seconds", "log_max_size_mb",
    "log_error_patterns", "restart_command", "restart_threshold",
    "notify_on_failure", "consecutive_failures", "last_success_at",
})


# ── Outcomes & results ───────────────────────────────────────────────────────


@dataclass
class Outcome:
    """Immediate verdict of one probe invocation.

    ``transient`` marks transport-level failures (timeouts, refused
    connections, failed commands) that the executor may retry. A deterministic
    verdict such as an output mismatch leaves it False.
    """

    healthy: bool
    details: str
    cpu_usage: float | None = None
    memory_usage: float | None = None
    latency_ms: float | None = None
    transient: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> Health:
        return Health.HEALTHY if self.healthy else Health.UNHEALTHY


@dataclass(frozen=True)
class CheckResult:
    """Persisted, immutable record of one outcome. Unique by (check_id, created_at)."""

    check_id: str
    status: Health
    details: str = ""
    cpu_usage: float | None = None
    memory_usage: float | None = None
    latency_ms: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def healthy(self) -> bool:
        return self.status == Health.HEALTHY

    @classmethod
    def from_outcome(cls, check_id: str, outcome: Outcome) -> CheckResult:
        return cls(
            check_id=check_id,
            status=outcome.status,
            details=outcome.details,
            cpu_usage=outcome.cpu_usage,
            memory_usage=outcome.memory_usage,
            latency_ms=outcome.latency_ms,
            extra=dict(outcome.extra),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "check_id": self.check_id,
            "status": self.status.value,
            "details": self.details,
            "cpu_usage": self.cpu_usage,
            "memory_usage": self.memory_usage,
            "latency_ms": self.latency_ms,
            "extra": json.dumps(self.extra) if self.extra else None,
            "created_at": format_ts(self.created_at),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> CheckResult:
        extra = row.get("extra") or {}
        if isinstance(extra, str):
            try:
                extra = json.loads(extra)
            except ValueError:
                extra = {}
        return cls(
            id=row["id"],
            check_id=row["check_id"],
            status=Health(row["status"]),
            details=row.get("details") or "",
            cpu_usage=row.get("cpu_usage"),
            memory_usage=row.get("memory_usage"),
            latency_ms=row.get("latency_ms"),
            extra=extra,
            created_at=parse_ts(row["created_at"]) or utcnow(),
        )


@dataclass
class ResultPage:
    """One page of results, newest first."""

    results: list[CheckResult]
    total: int
    page: int
    limit: int
