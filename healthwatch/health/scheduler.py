"""Health check scheduler — runs every enabled check on its own interval.

Each enabled check gets one asyncio task that runs the check, then sleeps
its interval (never less than ``min_interval``). The definition is re-read
from the store before every run, so a check disabled or deleted in the
meantime is never probed again and its loop exits. A resync loop picks up
checks added since startup and trims old results.

Runs of the same check never overlap: a per-check lock guards the loop and
manual ``run_now`` calls, and a run that finds the lock held is skipped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from healthwatch.checks.models import CheckDefinition, CheckResult
from healthwatch.store.base import Store, StoreUnavailable

from .executor import CheckExecutor

logger = logging.getLogger(__name__)


class HealthScheduler:
    """Owns one periodic task per enabled check plus the resync loop."""

    def __init__(
        self,
        store: Store,
        executor: CheckExecutor,
        min_interval: int = 10,
        resync_interval: float = 900.0,
        retention_days: int = 30,
        shutdown_grace: float = 10.0,
    ) -> None:
        self.store = store
        self.executor = executor
        self.min_interval = min_interval
        self.resync_interval = resync_interval
        self.retention_days = retention_days
        self.shutdown_grace = shutdown_grace
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._resync_task: asyncio.Task[None] | None = None
        self._running = False
        self.skipped_runs = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def scheduled(self) -> list[str]:
        return sorted(self._tasks)

    def interval_for(self, check: CheckDefinition) -> int:
        return max(check.interval_seconds, self.min_interval)

    async def start(self) -> None:
        """Start a loop for every enabled check, plus the resync loop."""
        if self._running:
            return
        self._running = True
        self.sync_tasks()
        self._resync_task = asyncio.create_task(self._resync_loop(), name="health-resync")
        logger.info("Health scheduler started: %d checks", len(self._tasks))

    async def stop(self) -> None:
        """Stop all loops; in-flight runs get ``shutdown_grace`` seconds to finish."""
        self._running = False
        if self._resync_task:
            self._resync_task.cancel()
            await asyncio.gather(self._resync_task, return_exceptions=True)
            self._resync_task = None

        tasks = list(self._tasks.items())
        for check_id, task in tasks:
            if not self._lock(check_id).locked():
                task.cancel()
        pending = [t for _, t in tasks if not t.done()]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=self.shutdown_grace)
            for task in still_running:
                logger.warning("Cancelling %s after shutdown grace period", task.get_name())
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        logger.info("Health scheduler stopped")

    def sync_tasks(self) -> None:
        """Start loops for newly enabled checks; drop loops for removed ones."""
        try:
            checks = self.store.find_all(enabled=True)
        except StoreUnavailable as exc:
            logger.warning("Cannot load check definitions: %s", exc)
            return

        wanted = {c.id for c in checks}
        for check_id, task in list(self._tasks.items()):
            if task.done():
                self._tasks.pop(check_id, None)
            elif check_id not in wanted and not self._lock(check_id).locked():
                task.cancel()
                self._tasks.pop(check_id, None)

        if not self._running:
            return
        for check in checks:
            if check.id not in self._tasks:
                self._tasks[check.id] = asyncio.create_task(
                    self._check_loop(check.id), name=f"health-{check.name}",
                )

    async def run_now(self, check_id: str) -> CheckResult | None:
        """Run one check immediately. Returns None if skipped or disabled."""
        check = self.store.find_by_id(check_id)
        if check is None:
            raise KeyError(f"Check {check_id} not found")
        if not check.enabled:
            logger.info("Check %s is disabled; not running", check.name)
            return None
        return await self._run_guarded(check)

    async def run_all_now(self) -> list[CheckResult]:
        """Run every enabled check concurrently."""
        checks = self.store.find_all(enabled=True)
        results = await asyncio.gather(*(self._run_guarded(c) for c in checks))
        return [r for r in results if r is not None]

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "scheduled": len(self._tasks),
            "in_flight": sum(1 for lock in self._locks.values() if lock.locked()),
            "skipped_runs": self.skipped_runs,
        }

    # ── Loops ─────────────────────────────────────────────────────────────

    async def _check_loop(self, check_id: str) -> None:
        """Persistent loop that runs a single check at its interval."""
        try:
            while self._running:
                try:
                    check = self.store.find_by_id(check_id)
                except StoreUnavailable as exc:
                    logger.warning("Cannot load check %s: %s", check_id, exc)
                    await asyncio.sleep(self.min_interval)
                    continue

                if check is None or not check.enabled:
                    logger.info("Check %s removed or disabled; stopping its loop", check_id)
                    break

                await self._run_guarded(check)
                if not self._running:
                    break
                await asyncio.sleep(self.interval_for(check))
        finally:
            if self._tasks.get(check_id) is asyncio.current_task():
                del self._tasks[check_id]
            lock = self._locks.get(check_id)
            if lock is not None and not lock.locked():
                del self._locks[check_id]

    async def _run_guarded(self, check: CheckDefinition) -> CheckResult | None:
        lock = self._lock(check.id)
        if lock.locked():
            self.skipped_runs += 1
            logger.info("Check %s still running; skipping this run", check.name)
            return None
        async with lock:
            try:
                result = await self.executor.execute(check)
            except StoreUnavailable as exc:
                logger.warning("Result for %s not recorded: %s", check.name, exc)
                return None
            except Exception:
                logger.exception("Health check error: %s", check.name)
                return None
        logger.debug("Check %s: %s (%s)", check.name, result.status.value, result.details)
        return result

    async def _resync_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.resync_interval)
            try:
                self.sync_tasks()
                removed = self.store.trim_results(self.retention_days)
                if removed:
                    logger.info("Trimmed %d results older than %d days", removed, self.retention_days)
            except Exception:
                logger.exception("Scheduler resync failed")

    def _lock(self, check_id: str) -> asyncio.Lock:
        return self._locks.setdefault(check_id, asyncio.Lock())
