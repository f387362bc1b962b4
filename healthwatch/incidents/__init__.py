"""Incidents — one open incident per failing check, with an event timeline."""

from .manager import IncidentManager, InvalidTransitionError
from .store import Incident, IncidentEvent, IncidentStatus, IncidentStore, Severity
