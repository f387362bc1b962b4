"""Tests for the check executor: retry, persistence, incidents, restarts."""

from __future__ import annotations

import pytest

from healthwatch.checks.models import CheckKind, Health
from healthwatch.health.executor import CheckExecutor
from healthwatch.health.probes import ProbeRegistry
from healthwatch.incidents.manager import IncidentManager
from healthwatch.incidents.store import IncidentStatus
from healthwatch.store.base import StoreUnavailable
from healthwatch.store.reconciler import Reconciler
from healthwatch.store.resilient import ResilientStore

from conftest import FakeTransport, FlakySqliteStore, ScriptedProbe, healthy, make_check, unhealthy


class TestRetry:
    @pytest.mark.asyncio
    async def test_recovers_within_budget(
        self, executor: CheckExecutor, probes: ProbeRegistry, store: ResilientStore,
        incidents: IncidentManager, delays: list[float],
    ) -> None:
        probe = ScriptedProbe(
            unhealthy("refused", transient=True), unhealthy("refused", transient=True), healthy(),
        )
        probes.register(CheckKind.API, probe)
        check = store.create(make_check())

        result = await executor.execute(check)
        assert result.status == Health.HEALTHY
        assert probe.calls == 3
        assert delays == [1.0, 2.0]
        assert incidents.active() == []
        assert store.get_results_by_check(check.id).total == 1

    @pytest.mark.asyncio
    async def test_deterministic_failure_not_retried(
        self, executor: CheckExecutor, probes: ProbeRegistry, store: ResilientStore,
        delays: list[float],
    ) -> None:
        probe = ScriptedProbe(unhealthy("Expected output not found"))
        probes.register(CheckKind.API, probe)
        result = await executor.execute(store.create(make_check()))
        assert result.status == Health.UNHEALTHY
        assert probe.calls == 1
        assert delays == []

    @pytest.mark.asyncio
    async def test_budget_exhausted(
        self, executor: CheckExecutor, probes: ProbeRegistry, store: ResilientStore,
    ) -> None:
        probe = ScriptedProbe(unhealthy("refused", transient=True))
        probes.register(CheckKind.API, probe)
        result = await executor.execute(store.create(make_check()))
        assert result.status == Health.UNHEALTHY
        assert probe.calls == 3


class TestIncidentFlow:
    @pytest.mark.asyncio
    async def test_three_failures_one_incident(
        self, executor: CheckExecutor, probes: ProbeRegistry, store: ResilientStore,
        incidents: IncidentManager, email: FakeTransport,
    ) -> None:
        probes.register(CheckKind.API, ScriptedProbe(unhealthy("API health check failed", transient=True)))
        check = store.create(make_check("unreachable", interval_seconds=60))

        for _ in range(3):
            current = store.find_by_id(check.id)
            await executor.execute(current)

        page = store.get_results_by_check(check.id)
        assert page.total == 3
        assert all(r.status == Health.UNHEALTHY for r in page.results)

        listing = incidents.list_incidents()
        assert listing.total == 1
        incident, events = incidents.get_with_events(listing.incidents[0].id)
        assert incident.status == IncidentStatus.INVESTIGATING
        assert events[0].message.startswith("Incident created")
        assert [e.message.startswith("Still unhealthy") for e in events[1:]] == [True, True]
        # Same clock instant, so the throttle window holds the rest back
        assert len(email.sent) == 1

    @pytest.mark.asyncio
    async def test_recovery_resolves_and_notifies(
        self, executor: CheckExecutor, probes: ProbeRegistry, store: ResilientStore,
        incidents: IncidentManager, email: FakeTransport,
    ) -> None:
        probes.register(CheckKind.API, ScriptedProbe(unhealthy("503"), healthy("200")))
        check = store.create(make_check())

        await executor.execute(store.find_by_id(check.id))
        assert len(incidents.active()) == 1
        await executor.execute(store.find_by_id(check.id))

        assert incidents.active() == []
        assert incidents.metrics()["resolved"] == 1
        subjects = [s for _, s, _ in email.sent]
        assert subjects[-1].startswith("[RESOLVED]")

    @pytest.mark.asyncio
    async def test_healthy_without_incident_is_quiet(
        self, executor: CheckExecutor, probes: ProbeRegistry, store: ResilientStore,
        email: FakeTransport,
    ) -> None:
        probes.register(CheckKind.API, ScriptedProbe(healthy()))
        await executor.execute(store.create(make_check()))
        assert email.sent == []

    @pytest.mark.asyncio
    async def test_counters(
        self, executor: CheckExecutor, probes: ProbeRegistry, store: ResilientStore,
    ) -> None:
        probes.register(CheckKind.API, ScriptedProbe(unhealthy(), unhealthy(), healthy()))
        check = store.create(make_check())

        await executor.execute(store.find_by_id(check.id))
        await executor.execute(store.find_by_id(check.id))
        assert store.find_by_id(check.id).consecutive_failures == 2

        result = await executor.execute(store.find_by_id(check.id))
        after = store.find_by_id(check.id)
        assert after.consecutive_failures == 0
        assert after.last_success_at == result.created_at

    @pytest.mark.asyncio
    async def test_incident_store_outage_does_not_fail_run(
        self, executor: CheckExecutor, probes: ProbeRegistry, store: ResilientStore,
        incidents: IncidentManager, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def unavailable(*args, **kwargs):
            raise StoreUnavailable("incidents offline")

        monkeypatch.setattr(incidents, "open_or_append", unavailable)
        probes.register(CheckKind.API, ScriptedProbe(unhealthy()))
        check = store.create(make_check())

        result = await executor.execute(check)
        assert result.status == Health.UNHEALTHY
        assert store.get_results_by_check(check.id).total == 1

    @pytest.mark.asyncio
    async def test_outage_failure_gets_incident_after_recovery(
        self, executor: CheckExecutor, probes: ProbeRegistry, store: ResilientStore,
        primary: FlakySqliteStore, incidents: IncidentManager, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def unavailable(*args, **kwargs):
            raise StoreUnavailable("incidents offline")

        probes.register(CheckKind.API, ScriptedProbe(unhealthy("refused"), healthy()))
        check = store.create(make_check())
        primary.down = True
        monkeypatch.setattr(incidents, "open_or_append", unavailable)

        await executor.execute(check)
        assert executor.deferred == 1

        monkeypatch.undo()
        primary.down = False
        store.state.mark_reachable()
        assert Reconciler(store).reconcile_once() is True

        await executor.execute(check)
        assert executor.deferred == 0
        statuses = [r.status for r in primary.get_results_by_check(check.id).results]
        assert statuses == [Health.HEALTHY, Health.UNHEALTHY]
        page = incidents.list_incidents()
        assert page.total == 1
        incident = page.incidents[0]
        assert incident.status == IncidentStatus.RESOLVED
        events = [e.message for e in incidents.get_with_events(incident.id)[1]]
        assert any(m.startswith("Incident created: refused (recorded ") for m in events)

    @pytest.mark.asyncio
    async def test_queued_failures_applied_in_order(
        self, executor: CheckExecutor, probes: ProbeRegistry, store: ResilientStore,
        incidents: IncidentManager, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def unavailable(*args, **kwargs):
            raise StoreUnavailable("incidents offline")

        probes.register(
            CheckKind.API, ScriptedProbe(unhealthy("first"), unhealthy("second"), unhealthy("third")),
        )
        check = store.create(make_check())
        monkeypatch.setattr(incidents, "open_or_append", unavailable)
        await executor.execute(check)
        await executor.execute(store.find_by_id(check.id))
        assert executor.deferred == 2

        monkeypatch.undo()
        await executor.execute(store.find_by_id(check.id))
        assert executor.deferred == 0
        incident = incidents.get_open(check.id)
        messages = [e.message for e in incidents.get_with_events(incident.id)[1]]
        assert messages[0].startswith("Incident created: first (recorded ")
        assert messages[1].startswith("Still unhealthy: second (recorded ")
        assert messages[2] == "Still unhealthy: third"

    @pytest.mark.asyncio
    async def test_primary_outage_still_records(
        self, executor: CheckExecutor, probes: ProbeRegistry, store: ResilientStore,
        primary: FlakySqliteStore, incidents: IncidentManager,
    ) -> None:
        probes.register(CheckKind.API, ScriptedProbe(unhealthy()))
        check = store.create(make_check())
        primary.down = True

        result = await executor.execute(check)
        assert store.state.dirty is True
        assert store.fallback.get_results_by_check(check.id).results[0].id == result.id
        assert len(incidents.active()) == 1


class TestRestart:
    @pytest.mark.asyncio
    async def test_restart_at_threshold_multiples(
        self, executor: CheckExecutor, probes: ProbeRegistry, store: ResilientStore,
        incidents: IncidentManager,
    ) -> None:
        probes.register(CheckKind.API, ScriptedProbe(unhealthy()))
        check = store.create(make_check(restart_command="echo restarted", restart_threshold=2))

        for _ in range(4):
            await executor.execute(store.find_by_id(check.id))

        incident = incidents.active()[0]
        _, events = incidents.get_with_events(incident.id)
        restarts = [e.message for e in events if e.message.startswith("Restart attempt")]
        assert len(restarts) == 2
        assert "succeeded: restarted" in restarts[0]

    @pytest.mark.asyncio
    async def test_manual_restart(
        self, executor: CheckExecutor, store: ResilientStore,
    ) -> None:
        check = store.create(make_check(restart_command="echo done; exit 1"))
        ok, output = await executor.restart(check.id)
        assert ok is False
        assert output == "done"

    @pytest.mark.asyncio
    async def test_manual_restart_errors(
        self, executor: CheckExecutor, store: ResilientStore,
    ) -> None:
        with pytest.raises(KeyError):
            await executor.restart("missing")
        check = store.create(make_check())
        with pytest.raises(ValueError):
            await executor.restart(check.id)
