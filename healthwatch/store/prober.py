"""Reachability prober — pings the primary store while it is marked down.

Features:
- Exponential backoff on consecutive failed pings (30s → 60s … 300s)
- Instant recovery: resets to the base interval once the primary answers
- Tracks consecutive failures + reconnect attempts for diagnostics
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .base import StoreUnavailable
from .resilient import ResilientStore

logger = logging.getLogger(__name__)

_BACKOFF_FACTOR = 2.0


class ReachabilityProber:
    """Flips the resilient store back to reachable after a successful ping."""

    def __init__(
        self,
        store: ResilientStore,
        interval: float = 30.0,
        max_interval: float = 300.0,
    ) -> None:
        self.store = store
        self.base_interval = interval
        self.max_interval = max_interval
        self.current_interval = interval
        self.consecutive_failures = 0
        self.reconnect_attempts = 0
        self._task: asyncio.Task[None] | None = None
        self._running = False

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.store.state.to_dict(),
            "consecutive_failures": self.consecutive_failures,
            "reconnect_attempts": self.reconnect_attempts,
            "current_interval": round(self.current_interval, 1),
        }

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._probe_loop(), name="healthwatch-store-prober")
        logger.info(
            "Store prober started (interval=%ss, max=%ss)", self.base_interval, self.max_interval,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Store prober stopped")

    async def _probe_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.current_interval)
                await asyncio.to_thread(self.probe_once)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Store prober crashed")

    def probe_once(self) -> bool:
        """Ping the primary if it is marked unreachable. Returns current reachability."""
        state = self.store.state
        if state.reachable:
            self.current_interval = self.base_interval
            return True

        try:
            self.store.primary.ping()
        except StoreUnavailable as exc:
            self.consecutive_failures += 1
            self.reconnect_attempts += 1
            state.mark_unreachable(str(exc))
            self.current_interval = min(
                self.base_interval * (_BACKOFF_FACTOR ** (self.consecutive_failures - 1)),
                self.max_interval,
            )
            logger.debug(
                "Primary store ping failed (%d consecutive), next attempt in %.0fs",
                self.consecutive_failures, self.current_interval,
            )
            return False

        state.mark_reachable()
        logger.info(
            "Primary store reachable again (after %d attempts)%s",
            self.reconnect_attempts, ", reconciliation pending" if state.dirty else "",
        )
        self.consecutive_failures = 0
        self.reconnect_attempts = 0
        self.current_interval = self.base_interval
        return True
