"""Health checks — probes, executor and scheduler."""

from .executor import CheckExecutor
from .probes import ProbeLimits, ProbeRegistry
from .scheduler import HealthScheduler
