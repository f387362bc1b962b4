"""MonitorContext — builds and owns every long-lived component.

Constructed once from Settings and passed around explicitly; there are no
module-level singletons.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from healthwatch.checks.registry import CheckRegistry
from healthwatch.config import Settings
from healthwatch.health.executor import CheckExecutor
from healthwatch.health.probes import ProbeLimits, ProbeRegistry
from healthwatch.health.scheduler import HealthScheduler
from healthwatch.incidents.manager import IncidentManager
from healthwatch.incidents.store import IncidentStore
from healthwatch.notifications.notifier import Notifier
from healthwatch.notifications.store import NotificationStore
from healthwatch.notifications.transports import EmailTransport, SlackTransport, Transport
from healthwatch.store.memory import MemoryStore
from healthwatch.store.prober import ReachabilityProber
from healthwatch.store.reconciler import Reconciler
from healthwatch.store.resilient import ResilientStore
from healthwatch.store.sqlite import SqliteStore

logger = logging.getLogger(__name__)


class MonitorContext:
    """Wires stores, executor, scheduler and background loops together."""

    def __init__(
        self,
        settings: Settings,
        transports: list[Transport] | None = None,
        probes: ProbeRegistry | None = None,
    ) -> None:
        self.settings = settings

        self.store = ResilientStore(
            SqliteStore(settings.db_path),
            MemoryStore(results_per_check=settings.memory_results_per_check),
        )
        self.registry = CheckRegistry(settings.checks_file, settings.default_check_interval)
        self.incidents = IncidentManager(
            IncidentStore(settings.db_path), critical_latency_ms=settings.critical_latency_ms,
        )
        self.notifier = Notifier(
            NotificationStore(settings.db_path),
            self.store,
            transports=transports if transports is not None else self._build_transports(),
            throttle_minutes=settings.throttle_minutes,
            default_recipients=settings.default_recipient_list,
            critical_unhealthy_count=settings.critical_unhealthy_count,
        )
        self.probes = probes or ProbeRegistry(ProbeLimits(
            server_load_threshold=settings.server_load_threshold,
            server_min_free_memory_pct=settings.server_min_free_memory_pct,
            log_tail_bytes=settings.log_tail_bytes,
            command_timeout_seconds=settings.command_timeout_seconds,
        ))
        self.executor = CheckExecutor(
            self.store,
            self.probes,
            self.incidents,
            self.notifier,
            retry_attempts=settings.retry_attempts,
            retry_base_delay=settings.retry_base_delay,
            restart_threshold=settings.restart_threshold,
            command_timeout=settings.command_timeout_seconds,
        )
        self.scheduler = HealthScheduler(
            self.store,
            self.executor,
            min_interval=settings.min_check_interval,
            resync_interval=settings.resync_interval,
            retention_days=settings.result_retention_days,
            shutdown_grace=settings.shutdown_grace_seconds,
        )
        self.prober = ReachabilityProber(
            self.store,
            interval=settings.reachability_interval,
            max_interval=settings.reachability_max_interval,
        )
        self.reconciler = Reconciler(self.store, interval=settings.reconcile_interval)

    def _build_transports(self) -> list[Transport]:
        s = self.settings
        transports: list[Transport] = []
        if s.smtp_host:
            transports.append(EmailTransport(
                s.smtp_host, s.smtp_port, s.smtp_user, s.smtp_password,
                sender=s.email_from, use_tls=s.smtp_use_tls,
            ))
        if s.slack_webhook_url:
            transports.append(SlackTransport(s.slack_webhook_url, s.slack_channel))
        if not transports:
            logger.info("No notification transports configured")
        return transports

    def import_checks(self) -> tuple[int, int]:
        """Upsert the checks file into the store (no-op if it is missing)."""
        if not self.settings.checks_file.exists():
            return 0, 0
        return self.registry.sync_to(self.store)

    async def start(self) -> None:
        await self.prober.start()
        await self.reconciler.start()
        await self.scheduler.start()

    async def stop(self) -> None:
        """Stop the scheduler first so no new writes race the final sync."""
        await self.scheduler.stop()
        await self.reconciler.stop()
        await self.prober.stop()
        if self.store.state.dirty:
            logger.warning("Shutting down with unsynced fallback writes")

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> None:
        stop_event = stop_event or asyncio.Event()
        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()

    def status(self) -> dict[str, Any]:
        return {
            "store": self.store.state.to_dict(),
            "prober": self.prober.to_dict(),
            "scheduler": self.scheduler.status(),
            "reconcile_cycles": self.reconciler.cycles,
            "deferred_incident_results": self.executor.deferred,
        }
