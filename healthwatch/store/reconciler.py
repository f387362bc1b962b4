"""Reconciler — drains fallback writes into the primary once it is back.

Checks are upserted by name+kind and results by check+created_at, so a
cycle that is interrupted halfway can simply run again without creating
duplicate rows.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

from .base import DuplicateCheckError, StoreUnavailable
from .resilient import ResilientStore

logger = logging.getLogger(__name__)


class Reconciler:
    """Periodic background task syncing dirty in-memory state to the primary."""

    def __init__(self, store: ResilientStore, interval: float = 60.0) -> None:
        self.store = store
        self.interval = interval
        self.cycles = 0
        self.last_synced: dict[str, int] = {}
        self._task: asyncio.Task[None] | None = None
        self._running = False

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="healthwatch-reconciler")
        logger.info("Reconciler started (interval=%ss)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Reconciler stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                await asyncio.to_thread(self.reconcile_once)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Reconciliation cycle crashed")

    def reconcile_once(self) -> bool:
        """Run one cycle. Returns True when everything pending was synced."""
        state = self.store.state
        if not state.reachable or not state.dirty:
            return False

        primary = self.store.primary
        fallback = self.store.fallback
        snapshot = fallback.dirty_snapshot()
        self.cycles += 1
        counts = {"checks": 0, "results": 0, "deleted": 0}
        failures = 0

        try:
            id_map: dict[str, str] = {}
            rejected: set[str] = set()
            for check in snapshot.checks:
                try:
                    stored = primary.upsert_check(check)
                except DuplicateCheckError as exc:
                    failures += 1
                    rejected.add(check.id)
                    logger.warning("Cannot reconcile check %s: %s", check.id, exc)
                    continue
                id_map[check.id] = stored.id
                fallback.mark_check_synced(check, stored)
                counts["checks"] += 1

            for result in snapshot.results:
                if result.check_id in rejected:
                    # Results stay pending until their check lands
                    continue
                check_id = id_map.get(result.check_id, result.check_id)
                primary.upsert_result(replace(result, check_id=check_id))
                fallback.mark_result_synced(result.id)
                counts["results"] += 1

            for name, kind in snapshot.deleted:
                primary.delete_by_key(name, kind)
                fallback.mark_delete_synced((name, kind))
                counts["deleted"] += 1
        except StoreUnavailable as exc:
            if state.mark_unreachable(str(exc)):
                logger.warning("Primary store dropped during reconciliation: %s", exc)
            logger.warning(
                "Reconciliation incomplete (%s synced), retrying next cycle", counts,
            )
            self.last_synced = counts
            return False

        self.last_synced = counts
        cleared = state.clear_dirty(fallback.has_dirty) if not failures else False
        if cleared:
            logger.info(
                "Reconciled fallback into primary: %d checks, %d results, %d deletes",
                counts["checks"], counts["results"], counts["deleted"],
            )
        else:
            logger.info("Reconciliation pass done, writes still pending: %s synced", counts)
        return cleared
