"""Store contract shared by the SQLite primary, the in-memory fallback and
the resilient composition of the two."""

from __future__ import annotations

from typing import Any, Protocol

from healthwatch.checks.models import CheckDefinition, CheckKind, CheckResult, ResultPage


class StoreError(Exception):
    """Base class for persistence errors."""


class StoreUnavailable(StoreError):
    """The backing store cannot be reached (or both stores failed)."""


class DuplicateCheckError(StoreError, ValueError):
    """A check with the same name and kind already exists."""

    def __init__(self, name: str, kind: CheckKind | str) -> None:
        kind_value = kind.value if isinstance(kind, CheckKind) else kind
        super().__init__(f"Check '{name}' ({kind_value}) already exists")


class Store(Protocol):
    """CRUD over check definitions plus the append-only result log."""

    def create(self, check: CheckDefinition) -> CheckDefinition: ...

    def update(self, check_id: str, **fields: Any) -> CheckDefinition | None: ...

    def delete(self, check_id: str) -> bool: ...

    def find_all(
        self, enabled: bool | None = None, kind: CheckKind | None = None,
    ) -> list[CheckDefinition]: ...

    def find_by_id(self, check_id: str) -> CheckDefinition | None: ...

    def save_result(self, result: CheckResult) -> CheckResult: ...

    def get_latest_results(self) -> list[CheckResult]: ...

    def get_results_by_check(
        self, check_id: str, page: int = 1, limit: int = 20,
    ) -> ResultPage: ...

    def trim_results(self, days: int) -> int: ...
