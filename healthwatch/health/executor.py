"""Check executor — probe with retry, persist, react to state changes.

One ``execute`` call is a complete run of a check:

1. Run the probe, retrying transient failures with exponential backoff
   (``2^attempt * retry_base_delay`` seconds between attempts).
2. Persist the final outcome as a CheckResult and update the check's
   failure counter / last-success timestamp.
3. Unhealthy: open or append to the check's incident, notify, and run the
   restart command when the failure count hits the restart threshold.
   Healthy with an open incident: resolve it and send a resolution notice.

Unhealthy results whose incident handling hit an unreachable incident
store are queued and applied, oldest first, on the check's next run.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from healthwatch.checks.models import CheckDefinition, CheckResult, Outcome, utcnow
from healthwatch.incidents.manager import IncidentManager
from healthwatch.incidents.store import Incident
from healthwatch.notifications.notifier import Notifier
from healthwatch.store.base import Store, StoreUnavailable

from .probes import ProbeRegistry, run_command

logger = logging.getLogger(__name__)


class CheckExecutor:
    """Runs a single check end to end."""

    def __init__(
        self,
        store: Store,
        probes: ProbeRegistry,
        incidents: IncidentManager,
        notifier: Notifier | None = None,
        retry_attempts: int = 3,
        retry_base_delay: float = 1.0,
        restart_threshold: int = 3,
        command_timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.probes = probes
        self.incidents = incidents
        self.notifier = notifier
        self.retry_attempts = max(retry_attempts, 1)
        self.retry_base_delay = retry_base_delay
        self.restart_threshold = restart_threshold
        self.command_timeout = command_timeout
        self._sleep = sleep
        # (name, kind) → unhealthy results not yet applied to an incident
        self._deferred: dict[tuple[str, str], list[CheckResult]] = {}

    async def probe_with_retry(self, check: CheckDefinition) -> Outcome:
        """Run the probe; only transient failures are retried."""
        outcome = await self.probes.run(check)
        for attempt in range(self.retry_attempts - 1):
            if outcome.healthy or not outcome.transient:
                break
            delay = 2 ** attempt * self.retry_base_delay
            logger.info(
                "Check %s failed (attempt %d/%d), retrying in %.1fs: %s",
                check.name, attempt + 1, self.retry_attempts, delay, outcome.details,
            )
            await self._sleep(delay)
            outcome = await self.probes.run(check)
        return outcome

    async def execute(self, check: CheckDefinition) -> CheckResult:
        """Run ``check`` and record the result.

        Raises StoreUnavailable only when the result itself cannot be saved.
        Incident and notification failures are logged; the unhealthy result
        stays queued until an incident records it.
        """
        outcome = await self.probe_with_retry(check)
        result = CheckResult.from_outcome(check.id, outcome)
        self.store.save_result(result)
        previous = self._previous_result(check.id, result.id)
        check = self._update_counters(check, result)

        if previous is not None and previous.healthy != result.healthy:
            logger.info(
                "Check %s: %s → %s", check.name, previous.status.value, result.status.value,
            )

        if not result.healthy:
            self._deferred.setdefault(check.natural_key, []).append(result)
        try:
            incident, created = self._record_failures(check, result)
            if result.healthy:
                await self._on_healthy(check, outcome)
            else:
                await self._on_unhealthy(check, outcome, incident, created)
        except StoreUnavailable as exc:
            logger.warning("Incident handling for %s deferred: %s", check.name, exc)
        return result

    @property
    def deferred(self) -> int:
        """Unhealthy results still waiting for incident handling."""
        return sum(len(results) for results in self._deferred.values())

    async def restart(self, check_id: str) -> tuple[bool, str]:
        """Run the check's restart command now. Returns (success, output)."""
        check = self.store.find_by_id(check_id)
        if check is None:
            raise KeyError(f"Check {check_id} not found")
        if not check.restart_command:
            raise ValueError(f"Check {check.name} has no restart command")
        incident = None
        try:
            incident = self.incidents.get_open(check.id)
        except StoreUnavailable as exc:
            logger.warning("Cannot look up incident for %s: %s", check.name, exc)
        return await self._restart(check, incident, reason="manual")

    # ── Internals ─────────────────────────────────────────────────────────

    def _previous_result(self, check_id: str, current_id: str) -> CheckResult | None:
        page = self.store.get_results_by_check(check_id, page=1, limit=2)
        for r in page.results:
            if r.id != current_id:
                return r
        return None

    def _update_counters(self, check: CheckDefinition, result: CheckResult) -> CheckDefinition:
        if result.healthy:
            fields = {"consecutive_failures": 0, "last_success_at": result.created_at}
        else:
            fields = {"consecutive_failures": check.consecutive_failures + 1}
        updated = self.store.update(check.id, **fields)
        if updated is None:
            # Deleted mid-run; keep going with the local copy
            for key, value in fields.items():
                setattr(check, key, value)
            return check
        return updated

    def _record_failures(
        self, check: CheckDefinition, current: CheckResult,
    ) -> tuple[Incident | None, bool]:
        """Apply queued unhealthy results to the check's incident, oldest first.

        Results queued while the incident store was unreachable carry their
        original timestamp in the event text. Returns the incident touched
        last and whether any of them opened it.
        """
        pending = self._deferred.get(check.natural_key)
        incident, created = None, False
        while pending:
            result = pending[0]
            details = result.details
            if result.id != current.id:
                details = f"{details} (recorded {result.created_at:%Y-%m-%d %H:%M:%S})"
            incident, opened = self.incidents.open_or_append(
                check, details, latency_ms=result.latency_ms,
            )
            created = created or opened
            pending.pop(0)
        self._deferred.pop(check.natural_key, None)
        return incident, created

    async def _on_unhealthy(
        self, check: CheckDefinition, outcome: Outcome, incident: Incident | None, created: bool,
    ) -> None:
        if created:
            logger.warning("Check %s is unhealthy: %s", check.name, outcome.details)
        if self.notifier is not None:
            await self.notifier.notify(check, outcome, incident=incident)

        threshold = check.restart_threshold or self.restart_threshold
        failures = check.consecutive_failures
        if check.restart_command and failures >= threshold and failures % threshold == 0:
            await self._restart(check, incident, reason=f"{failures} consecutive failures")

    async def _on_healthy(self, check: CheckDefinition, outcome: Outcome) -> None:
        incident = self.incidents.resolve(
            check.id, f"Check is healthy again: {outcome.details}",
        )
        if incident is None:
            return
        logger.info("Check %s recovered; incident %s resolved", check.name, incident.id)
        if self.notifier is not None:
            await self.notifier.notify(check, outcome, incident=incident, resolved=True)

    async def _restart(
        self, check: CheckDefinition, incident: Incident | None, reason: str,
    ) -> tuple[bool, str]:
        logger.warning("Restarting %s (%s): %s", check.name, reason, check.restart_command)
        started = utcnow()
        try:
            code, stdout, stderr = await run_command(check.restart_command, self.command_timeout)
        except asyncio.TimeoutError:
            ok, output = False, f"timed out after {self.command_timeout:.0f}s"
        except OSError as exc:
            ok, output = False, str(exc)
        else:
            ok, output = code == 0, (stdout or stderr)[:500]

        elapsed = (utcnow() - started).total_seconds()
        verdict = "succeeded" if ok else "failed"
        logger.info("Restart of %s %s in %.1fs", check.name, verdict, elapsed)
        if incident is not None:
            self.incidents.add_event(
                incident.id, f"Restart attempt ({reason}) {verdict}: {output}".rstrip(": "),
            )
        return ok, output
