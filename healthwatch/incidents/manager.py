"""Incident lifecycle on top of IncidentStore.

Automatic transitions only ever move an incident toward ``resolved``;
manual updates may move freely among the three open states.
"""

from __future__ import annotations

import logging
from typing import Any

from healthwatch.checks.models import CheckDefinition, CheckKind, utcnow

from .store import (
    DuplicateOpenIncidentError,
    Incident,
    IncidentEvent,
    IncidentPage,
    IncidentStatus,
    IncidentStore,
    Severity,
)

logger = logging.getLogger(__name__)


class InvalidTransitionError(ValueError):
    """Raised when an incident status change is not allowed."""


class IncidentManager:
    """Opens, appends to and resolves incidents; one open incident per check."""

    def __init__(self, store: IncidentStore, critical_latency_ms: float = 10_000) -> None:
        self.store = store
        self.critical_latency_ms = critical_latency_ms

    def classify(self, check: CheckDefinition, latency_ms: float | None = None) -> Severity:
        if check.kind == CheckKind.SERVER:
            return Severity.CRITICAL
        if latency_ms is not None and latency_ms > self.critical_latency_ms:
            return Severity.CRITICAL
        return Severity.HIGH

    def open_or_append(
        self,
        check: CheckDefinition,
        details: str,
        latency_ms: float | None = None,
    ) -> tuple[Incident, bool]:
        """Return ``(incident, created)`` for the check's open incident."""
        existing = self.store.find_open(check.id)
        if existing is None:
            severity = self.classify(check, latency_ms)
            incident = Incident(
                check_id=check.id,
                title=f"{check.name} is unhealthy",
                severity=severity,
                details=details,
            )
            try:
                self.store.create(incident)
            except DuplicateOpenIncidentError:
                # Lost a race with another writer; append to theirs instead
                existing = self.store.find_open(check.id)
                if existing is None:
                    raise
            else:
                self.store.add_event(IncidentEvent(incident.id, f"Incident created: {details}"))
                logger.info(
                    "Opened incident %s for %s (%s)", incident.id, check.name, severity.value,
                )
                return incident, True

        self.store.add_event(IncidentEvent(existing.id, f"Still unhealthy: {details}"))
        escalated = self.classify(check, latency_ms)
        if escalated.rank > existing.severity.rank:
            existing = self.store.update(existing.id, severity=escalated) or existing
            self.store.add_event(IncidentEvent(existing.id, f"Severity raised to {escalated.value}"))
        logger.debug("Appended to incident %s for %s", existing.id, check.name)
        return existing, False

    def resolve(self, check_id: str, message: str = "Incident resolved") -> Incident | None:
        """Resolve the check's open incident. No open incident is a no-op."""
        incident = self.store.find_open(check_id)
        if incident is None:
            return None
        return self._resolve(incident, message)

    def resolve_incident(self, incident_id: str, message: str = "Incident resolved") -> Incident:
        incident = self.store.get(incident_id)
        if incident is None:
            raise KeyError(f"Incident {incident_id} not found")
        if not incident.is_open:
            return incident
        return self._resolve(incident, message)

    def update_status(self, incident_id: str, status: IncidentStatus | str) -> Incident:
        """Manual status change from outside (operator action)."""
        new_status = IncidentStatus(status)
        incident = self.store.get(incident_id)
        if incident is None:
            raise KeyError(f"Incident {incident_id} not found")
        if not incident.is_open:
            raise InvalidTransitionError(f"Incident {incident_id} is resolved")
        if new_status == incident.status:
            return incident
        if new_status == IncidentStatus.RESOLVED:
            return self._resolve(incident, "Incident resolved manually")

        updated = self.store.update(incident_id, status=new_status) or incident
        self.store.add_event(IncidentEvent(
            incident_id, f"Status changed: {incident.status.value} → {new_status.value}",
        ))
        return updated

    def add_event(self, incident_id: str, message: str) -> IncidentEvent:
        return self.store.add_event(IncidentEvent(incident_id, message))

    # ── Queries ───────────────────────────────────────────────────────────

    def get_open(self, check_id: str) -> Incident | None:
        return self.store.find_open(check_id)

    def active(self) -> list[Incident]:
        return self.store.list_active()

    def list_incidents(
        self, page: int = 1, limit: int = 10, status: IncidentStatus | None = None,
    ) -> IncidentPage:
        return self.store.list_all(page=page, limit=limit, status=status)

    def get_with_events(self, incident_id: str) -> tuple[Incident | None, list[IncidentEvent]]:
        return self.store.get(incident_id), self.store.get_events(incident_id)

    def metrics(self) -> dict[str, Any]:
        return self.store.metrics()

    def _resolve(self, incident: Incident, message: str) -> Incident:
        resolved = self.store.update(
            incident.id, status=IncidentStatus.RESOLVED, resolved_at=utcnow(),
        ) or incident
        self.store.add_event(IncidentEvent(incident.id, message))
        logger.info("Resolved incident %s for check %s", incident.id, incident.check_id)
        return resolved
