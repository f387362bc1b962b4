"""Tests for the health scheduler loops and the overlap guard."""

from __future__ import annotations

import asyncio

import pytest

from healthwatch.checks.models import CheckDefinition, CheckKind, Outcome
from healthwatch.health.executor import CheckExecutor
from healthwatch.health.probes import ProbeRegistry
from healthwatch.health.scheduler import HealthScheduler
from healthwatch.store.resilient import ResilientStore

from conftest import make_check


class RecordingProbe:
    """Healthy probe that records which checks it ran; can be held open."""

    def __init__(self) -> None:
        self.seen: list[str] = []
        self.gate: asyncio.Event | None = None

    async def __call__(self, check: CheckDefinition) -> Outcome:
        self.seen.append(check.name)
        if self.gate is not None:
            await self.gate.wait()
        return Outcome(healthy=True, details="ok")


@pytest.fixture
def probe(probes: ProbeRegistry) -> RecordingProbe:
    recorder = RecordingProbe()
    probes.register(CheckKind.API, recorder)
    return recorder


@pytest.fixture
def scheduler(store: ResilientStore, executor: CheckExecutor) -> HealthScheduler:
    return HealthScheduler(
        store, executor, min_interval=0.01, resync_interval=3600, shutdown_grace=1.0,
    )


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestScheduling:
    @pytest.mark.asyncio
    async def test_disabled_checks_never_probed(
        self, scheduler: HealthScheduler, store: ResilientStore, probe: RecordingProbe,
    ) -> None:
        store.create(make_check("on", interval_seconds=0))
        store.create(make_check("off", enabled=False, interval_seconds=0))

        await scheduler.start()
        await _wait_for(lambda: probe.seen.count("on") >= 3)
        await scheduler.stop()

        assert "off" not in probe.seen
        assert scheduler.status()["scheduled"] == 0

    @pytest.mark.asyncio
    async def test_runs_immediately_on_start(
        self, store: ResilientStore, executor: CheckExecutor, probe: RecordingProbe,
    ) -> None:
        store.create(make_check("slow", interval_seconds=3600))
        scheduler = HealthScheduler(store, executor, min_interval=10, resync_interval=3600)
        await scheduler.start()
        await _wait_for(lambda: probe.seen == ["slow"])
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_disabling_stops_loop(
        self, scheduler: HealthScheduler, store: ResilientStore, probe: RecordingProbe,
    ) -> None:
        check = store.create(make_check("flip", interval_seconds=0))
        await scheduler.start()
        await _wait_for(lambda: len(probe.seen) >= 1)

        store.update(check.id, enabled=False)
        await _wait_for(lambda: check.id not in scheduler.scheduled)
        runs = len(probe.seen)
        await asyncio.sleep(0.05)
        assert len(probe.seen) == runs
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_deleted_check_releases_its_lock(
        self, scheduler: HealthScheduler, store: ResilientStore, probe: RecordingProbe,
    ) -> None:
        check = store.create(make_check("gone", interval_seconds=0))
        await scheduler.start()
        await _wait_for(lambda: len(probe.seen) >= 1)
        assert check.id in scheduler._locks

        store.delete(check.id)
        await _wait_for(lambda: check.id not in scheduler.scheduled)
        assert check.id not in scheduler._locks
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_sync_picks_up_new_checks(
        self, store: ResilientStore, executor: CheckExecutor, probe: RecordingProbe,
    ) -> None:
        scheduler = HealthScheduler(store, executor, min_interval=3600, resync_interval=3600)
        await scheduler.start()
        assert scheduler.scheduled == []

        check = store.create(make_check("late"))
        scheduler.sync_tasks()
        assert scheduler.scheduled == [check.id]
        await _wait_for(lambda: probe.seen == ["late"])
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_run_all_now_only_enabled(
        self, scheduler: HealthScheduler, store: ResilientStore, probe: RecordingProbe,
    ) -> None:
        store.create(make_check("a"))
        store.create(make_check("b"))
        store.create(make_check("c", enabled=False))
        results = await scheduler.run_all_now()
        assert len(results) == 2
        assert sorted(probe.seen) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_run_now(
        self, scheduler: HealthScheduler, store: ResilientStore, probe: RecordingProbe,
    ) -> None:
        on = store.create(make_check("on"))
        off = store.create(make_check("off", enabled=False))
        assert (await scheduler.run_now(on.id)) is not None
        assert (await scheduler.run_now(off.id)) is None
        with pytest.raises(KeyError):
            await scheduler.run_now("missing")
        assert probe.seen == ["on"]


class TestOverlap:
    @pytest.mark.asyncio
    async def test_concurrent_run_is_skipped(
        self, scheduler: HealthScheduler, store: ResilientStore, probe: RecordingProbe,
    ) -> None:
        check = store.create(make_check("busy"))
        probe.gate = asyncio.Event()

        first = asyncio.create_task(scheduler.run_now(check.id))
        await _wait_for(lambda: probe.seen == ["busy"])
        assert await scheduler.run_now(check.id) is None
        assert scheduler.skipped_runs == 1

        probe.gate.set()
        assert (await first) is not None
        assert probe.seen == ["busy"]

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_run_finish(
        self, scheduler: HealthScheduler, store: ResilientStore, probe: RecordingProbe,
    ) -> None:
        check = store.create(make_check("inflight", interval_seconds=3600))
        probe.gate = asyncio.Event()
        await scheduler.start()
        await _wait_for(lambda: probe.seen == ["inflight"])

        stopping = asyncio.create_task(scheduler.stop())
        await asyncio.sleep(0.02)
        probe.gate.set()
        await stopping

        assert store.get_results_by_check(check.id).total == 1
        assert not scheduler.is_running
