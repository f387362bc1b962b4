"""Resilient store — primary first, in-memory fallback on outage.

Every method is written out explicitly: while the primary is marked
reachable the call goes there (and the result is mirrored into memory);
on ``StoreUnavailable``, or while the primary is marked unreachable, the
fallback serves the call and writes mark the store dirty. Only the
reachability prober flips the primary back to reachable.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, TypeVar

from healthwatch.checks.models import CheckDefinition, CheckKind, CheckResult, ResultPage

from .base import StoreUnavailable
from .memory import MemoryStore
from .sqlite import SqliteStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoreState:
    """Reachable/dirty flags shared by the store, the prober and the reconciler."""

    def __init__(self, reachable: bool = True) -> None:
        self._lock = threading.Lock()
        self._reachable = reachable
        self._dirty = False
        self.last_error: str | None = None
        self.last_transition: str | None = None

    @property
    def reachable(self) -> bool:
        with self._lock:
            return self._reachable

    @property
    def dirty(self) -> bool:
        with self._lock:
            return self._dirty

    def mark_unreachable(self, error: str) -> bool:
        """Returns True if this call flipped the flag."""
        with self._lock:
            self.last_error = error
            if not self._reachable:
                return False
            self._reachable = False
            self.last_transition = f"reachable→unreachable @ {_now()}"
            return True

    def mark_reachable(self) -> bool:
        with self._lock:
            if self._reachable:
                return False
            self._reachable = True
            self.last_error = None
            self.last_transition = f"unreachable→reachable @ {_now()}"
            return True

    def mark_dirty(self) -> None:
        with self._lock:
            self._dirty = True

    def clear_dirty(self, still_pending: Callable[[], bool]) -> bool:
        """Clear the dirty flag unless ``still_pending()`` reports leftover writes."""
        with self._lock:
            if still_pending():
                return False
            self._dirty = False
            return True

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "reachable": self._reachable,
                "dirty": self._dirty,
                "last_error": self.last_error,
                "last_transition": self.last_transition,
            }


class ResilientStore:
    """Store contract over a SQLite primary with a MemoryStore fallback."""

    def __init__(
        self,
        primary: SqliteStore,
        fallback: MemoryStore,
        state: StoreState | None = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.state = state or StoreState()

    @property
    def degraded(self) -> bool:
        return not self.state.reachable or self.state.dirty

    # ── Check definitions ─────────────────────────────────────────────────

    def create(self, check: CheckDefinition) -> CheckDefinition:
        if self.state.reachable:
            try:
                created = self.primary.create(check)
            except StoreUnavailable as exc:
                self._primary_failed("create", exc)
            else:
                self.fallback.mirror_check(created)
                return created
        return self._fallback_write("create", self.fallback.create, check)

    def update(self, check_id: str, **fields: Any) -> CheckDefinition | None:
        if self.state.reachable:
            try:
                updated = self.primary.update(check_id, **fields)
            except StoreUnavailable as exc:
                self._primary_failed("update", exc)
            else:
                if updated is not None:
                    self.fallback.mirror_update(updated, fields)
                return updated
        return self._fallback_write("update", self.fallback.update, check_id, **fields)

    def delete(self, check_id: str) -> bool:
        if self.state.reachable:
            try:
                deleted = self.primary.delete(check_id)
            except StoreUnavailable as exc:
                self._primary_failed("delete", exc)
            else:
                self.fallback.forget_check(check_id)
                return deleted
        return self._fallback_write("delete", self.fallback.delete, check_id)

    def find_all(
        self, enabled: bool | None = None, kind: CheckKind | None = None,
    ) -> list[CheckDefinition]:
        if self.state.reachable:
            try:
                checks = self.primary.find_all(enabled=enabled, kind=kind)
            except StoreUnavailable as exc:
                self._primary_failed("find_all", exc)
            else:
                self.fallback.mirror_checks(checks, complete=enabled is None and kind is None)
                return checks
        return self._fallback_read("find_all", self.fallback.find_all, enabled=enabled, kind=kind)

    def find_by_id(self, check_id: str) -> CheckDefinition | None:
        if self.state.reachable:
            try:
                check = self.primary.find_by_id(check_id)
            except StoreUnavailable as exc:
                self._primary_failed("find_by_id", exc)
            else:
                if check is not None:
                    self.fallback.mirror_check(check)
                return check
        return self._fallback_read("find_by_id", self.fallback.find_by_id, check_id)

    # ── Results ───────────────────────────────────────────────────────────

    def save_result(self, result: CheckResult) -> CheckResult:
        if self.state.reachable:
            try:
                saved = self.primary.save_result(result)
            except StoreUnavailable as exc:
                self._primary_failed("save_result", exc)
            else:
                self.fallback.mirror_result(saved)
                return saved
        return self._fallback_write("save_result", self.fallback.save_result, result)

    def get_latest_results(self) -> list[CheckResult]:
        if self.state.reachable:
            try:
                return self.primary.get_latest_results()
            except StoreUnavailable as exc:
                self._primary_failed("get_latest_results", exc)
        return self._fallback_read("get_latest_results", self.fallback.get_latest_results)

    def get_results_by_check(
        self, check_id: str, page: int = 1, limit: int = 20,
    ) -> ResultPage:
        if self.state.reachable:
            try:
                return self.primary.get_results_by_check(check_id, page=page, limit=limit)
            except StoreUnavailable as exc:
                self._primary_failed("get_results_by_check", exc)
        return self._fallback_read(
            "get_results_by_check", self.fallback.get_results_by_check,
            check_id, page=page, limit=limit,
        )

    def trim_results(self, days: int) -> int:
        removed = self.fallback.trim_results(days)
        if self.state.reachable:
            try:
                removed = self.primary.trim_results(days)
            except StoreUnavailable as exc:
                self._primary_failed("trim_results", exc)
        return removed

    # ── Internals ─────────────────────────────────────────────────────────

    def _primary_failed(self, op: str, exc: StoreUnavailable) -> None:
        if self.state.mark_unreachable(str(exc)):
            logger.warning("Primary store unreachable during %s, using in-memory fallback: %s", op, exc)
        else:
            logger.debug("Primary store %s failed again: %s", op, exc)

    def _fallback_write(self, op: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        result = self._fallback_read(op, fn, *args, **kwargs)
        self.state.mark_dirty()
        return result

    def _fallback_read(self, op: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return fn(*args, **kwargs)
        except (StoreUnavailable, MemoryError, RuntimeError) as exc:
            logger.error("Fallback store %s failed: %s", op, exc)
            raise StoreUnavailable(f"Primary and fallback stores failed during {op}: {exc}") from exc


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
