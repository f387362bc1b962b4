"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from healthwatch.checks.models import CheckDefinition, CheckKind, Outcome
from healthwatch.health.executor import CheckExecutor
from healthwatch.health.probes import ProbeRegistry
from healthwatch.incidents.manager import IncidentManager
from healthwatch.incidents.store import IncidentStore
from healthwatch.notifications.notifier import Notifier
from healthwatch.notifications.store import Channel, NotificationStore
from healthwatch.store.base import StoreUnavailable
from healthwatch.store.memory import MemoryStore
from healthwatch.store.resilient import ResilientStore
from healthwatch.store.sqlite import SqliteStore


class FlakySqliteStore(SqliteStore):
    """SqliteStore whose connection can be switched off to simulate an outage."""

    down = False

    @contextmanager
    def _conn(self) -> Iterator[Any]:
        if self.down:
            raise StoreUnavailable("simulated outage")
        with super()._conn() as conn:
            yield conn


class FakeTransport:
    """Records every send; ``ok`` / ``raises`` control the result."""

    def __init__(self, channel: Channel = Channel.EMAIL, ok: bool = True,
                 raises: Exception | None = None) -> None:
        self.channel = channel
        self.ok = ok
        self.raises = raises
        self.sent: list[tuple[list[str], str, str]] = []

    async def send(self, recipients: list[str], subject: str, body: str) -> bool:
        self.sent.append((list(recipients), subject, body))
        if self.raises is not None:
            raise self.raises
        return self.ok


class ScriptedProbe:
    """Probe that replays a list of outcomes, repeating the last one."""

    def __init__(self, *outcomes: Outcome) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self, check: CheckDefinition) -> Outcome:
        self.calls += 1
        idx = min(self.calls - 1, len(self.outcomes) - 1)
        return self.outcomes[idx]


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def make_check(name: str = "api", kind: CheckKind = CheckKind.API, **kwargs: Any) -> CheckDefinition:
    if kind == CheckKind.API:
        kwargs.setdefault("endpoint", "http://service.local/health")
    kwargs.setdefault("interval_seconds", 60)
    return CheckDefinition(name=name, kind=kind, **kwargs)


def healthy(details: str = "ok", **kwargs: Any) -> Outcome:
    return Outcome(healthy=True, details=details, **kwargs)


def unhealthy(details: str = "down", transient: bool = False, **kwargs: Any) -> Outcome:
    return Outcome(healthy=False, details=details, transient=transient, **kwargs)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "healthwatch.db"


@pytest.fixture
def primary(db_path: Path) -> FlakySqliteStore:
    return FlakySqliteStore(db_path)


@pytest.fixture
def fallback() -> MemoryStore:
    return MemoryStore(results_per_check=100)


@pytest.fixture
def store(primary: FlakySqliteStore, fallback: MemoryStore) -> ResilientStore:
    return ResilientStore(primary, fallback)


@pytest.fixture
def incident_store(db_path: Path) -> IncidentStore:
    return IncidentStore(db_path)


@pytest.fixture
def incidents(incident_store: IncidentStore) -> IncidentManager:
    return IncidentManager(incident_store)


@pytest.fixture
def notification_store(db_path: Path) -> NotificationStore:
    return NotificationStore(db_path)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def email() -> FakeTransport:
    return FakeTransport(Channel.EMAIL)


@pytest.fixture
def notifier(
    notification_store: NotificationStore, store: ResilientStore,
    email: FakeTransport, clock: FakeClock,
) -> Notifier:
    return Notifier(
        notification_store, store, transports=[email], throttle_minutes=60,
        default_recipients=["ops@example.com"], clock=clock,
    )


@pytest.fixture
def probes() -> ProbeRegistry:
    return ProbeRegistry()


@pytest.fixture
def delays() -> list[float]:
    return []


@pytest.fixture
def executor(
    store: ResilientStore, probes: ProbeRegistry, incidents: IncidentManager,
    notifier: Notifier, delays: list[float],
) -> CheckExecutor:
    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    return CheckExecutor(
        store, probes, incidents, notifier,
        retry_attempts=3, retry_base_delay=1.0, restart_threshold=3, sleep=fake_sleep,
    )
