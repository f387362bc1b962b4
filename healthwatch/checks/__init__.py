from healthwatch.checks.models import (
    CheckDefinition,
    CheckKind,
    CheckResult,
    Health,
    Outcome,
    ResultPage,
)
from healthwatch.checks.registry import CheckRegistry

__all__ = [
    "CheckDefinition",
    "CheckKind",
    "CheckRegistry",
    "CheckResult",
    "Health",
    "Outcome",
    "ResultPage",
]
