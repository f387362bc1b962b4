"""In-memory store used as the fallback while the primary is unreachable.

Besides implementing the Store contract it keeps a mirror of what the
primary last returned, and tracks which entries were written here while
the primary was down (dirty) so the reconciler can drain them.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any

from healthwatch.checks.models import (
    MUTABLE_FIELDS,
    CheckDefinition,
    CheckKind,
    CheckResult,
    ResultPage,
    utcnow,
)

from .base import DuplicateCheckError

logger = logging.getLogger(__name__)


@dataclass
class DirtySnapshot:
    """Pending fallback writes at one point in time."""

    checks: list[CheckDefinition] = field(default_factory=list)
    results: list[CheckResult] = field(default_factory=list)
    deleted: list[tuple[str, str]] = field(default_factory=list)  # (name, kind)

    @property
    def empty(self) -> bool:
        return not (self.checks or self.results or self.deleted)


class MemoryStore:
    """Volatile implementation of the Store contract."""

    def __init__(self, results_per_check: int = 100) -> None:
        self._results_per_check = results_per_check
        self._lock = threading.RLock()
        self._checks: dict[str, CheckDefinition] = {}
        self._results: dict[str, list[CheckResult]] = {}
        self._dirty_checks: set[str] = set()
        self._dirty_results: dict[str, CheckResult] = {}
        self._deleted: dict[tuple[str, str], str] = {}  # natural key → check id

    # ── Check definitions ─────────────────────────────────────────────────

    def create(self, check: CheckDefinition) -> CheckDefinition:
        with self._lock:
            if self._find_key(check.name, check.kind.value) is not None:
                raise DuplicateCheckError(check.name, check.kind)
            self._checks[check.id] = replace(check)
            self._dirty_checks.add(check.id)
            self._deleted.pop(check.natural_key, None)
            return replace(check)

    def find_by_id(self, check_id: str) -> CheckDefinition | None:
        with self._lock:
            check = self._checks.get(check_id)
            return replace(check) if check else None

    def find_all(
        self, enabled: bool | None = None, kind: CheckKind | None = None,
    ) -> list[CheckDefinition]:
        with self._lock:
            checks = list(self._checks.values())
        if enabled is not None:
            checks = [c for c in checks if c.enabled == enabled]
        if kind is not None:
            checks = [c for c in checks if c.kind == CheckKind(kind)]
        return [replace(c) for c in sorted(checks, key=lambda c: c.name)]

    def update(self, check_id: str, **fields: Any) -> CheckDefinition | None:
        with self._lock:
            current = self._checks.get(check_id)
            if current is None:
                return None
            updates = {k: v for k, v in fields.items() if k in MUTABLE_FIELDS}
            if not updates:
                return replace(current)
            new_name = updates.get("name", current.name)
            clash = self._find_key(new_name, current.kind.value)
            if clash is not None and clash.id != check_id:
                raise DuplicateCheckError(new_name, current.kind)
            updated = replace(current, **updates, updated_at=utcnow())
            self._checks[check_id] = updated
            self._dirty_checks.add(check_id)
            return replace(updated)

    def delete(self, check_id: str) -> bool:
        with self._lock:
            check = self._checks.pop(check_id, None)
            if check is None:
                return False
            self._results.pop(check_id, None)
            self._dirty_checks.discard(check_id)
            self._dirty_results = {
                rid: r for rid, r in self._dirty_results.items() if r.check_id != check_id
            }
            self._deleted[check.natural_key] = check_id
            return True

    # ── Results ───────────────────────────────────────────────────────────

    def save_result(self, result: CheckResult) -> CheckResult:
        with self._lock:
            self._append_result(result)
            self._dirty_results[result.id] = result
        return result

    def get_latest_results(self) -> list[CheckResult]:
        with self._lock:
            latest = [max(rs, key=lambda r: r.created_at) for rs in self._results.values() if rs]
        return sorted(latest, key=lambda r: r.check_id)

    def get_results_by_check(
        self, check_id: str, page: int = 1, limit: int = 20,
    ) -> ResultPage:
        page = max(page, 1)
        with self._lock:
            results = sorted(
                self._results.get(check_id, []), key=lambda r: r.created_at, reverse=True,
            )
        start = (page - 1) * limit
        return ResultPage(
            results=results[start:start + limit], total=len(results), page=page, limit=limit,
        )

    def trim_results(self, days: int) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        removed = 0
        with self._lock:
            for check_id, results in self._results.items():
                kept = [r for r in results if r.created_at >= cutoff]
                removed += len(results) - len(kept)
                self._results[check_id] = kept
        return removed

    # ── Mirror of the primary (never dirty) ───────────────────────────────

    def mirror_check(self, check: CheckDefinition) -> None:
        """Cache a check as returned by the primary, unless a local write is pending."""
        with self._lock:
            if check.id in self._dirty_checks or check.natural_key in self._deleted:
                return
            self._checks[check.id] = replace(check)

    def mirror_update(self, check: CheckDefinition, fields: dict[str, Any]) -> None:
        """Cache a check the primary just updated with ``fields``.

        A pending local write for the same check (by id, or by name+kind
        for a check created here during the outage) takes the new values
        too, so reconciliation cannot push the older ones back.
        """
        with self._lock:
            pending = self._checks.get(check.id) if check.id in self._dirty_checks else None
            if pending is None:
                local = self._find_key(check.name, check.kind.value)
                if local is not None and local.id in self._dirty_checks:
                    pending = local
            if pending is None:
                self.mirror_check(check)
                return
            updates = {k: v for k, v in fields.items() if k in MUTABLE_FIELDS}
            self._checks[pending.id] = replace(pending, **updates, updated_at=utcnow())

    def mirror_checks(self, checks: list[CheckDefinition], complete: bool = False) -> None:
        """Cache several checks; with ``complete`` also drop clean entries the primary no longer has."""
        with self._lock:
            for check in checks:
                self.mirror_check(check)
            if complete:
                keep = {c.id for c in checks} | self._dirty_checks
                for check_id in [cid for cid in self._checks if cid not in keep]:
                    del self._checks[check_id]
                    self._results.pop(check_id, None)

    def mirror_result(self, result: CheckResult) -> None:
        with self._lock:
            self._append_result(result)

    def forget_check(self, check_id: str) -> None:
        """Drop a check that the primary confirmed deleted."""
        with self._lock:
            self._checks.pop(check_id, None)
            self._results.pop(check_id, None)
            self._dirty_checks.discard(check_id)

    # ── Dirty tracking ────────────────────────────────────────────────────

    def has_dirty(self) -> bool:
        with self._lock:
            return bool(self._dirty_checks or self._dirty_results or self._deleted)

    def dirty_snapshot(self) -> DirtySnapshot:
        with self._lock:
            return DirtySnapshot(
                checks=[replace(self._checks[cid]) for cid in sorted(self._dirty_checks)
                        if cid in self._checks],
                results=sorted(self._dirty_results.values(), key=lambda r: r.created_at),
                deleted=list(self._deleted),
            )

    def mark_check_synced(self, local: CheckDefinition, stored: CheckDefinition) -> None:
        """Record that ``local`` now lives in the primary as ``stored``.

        When the primary kept a different id for the same name+kind, the
        local entry and its results are re-keyed to the primary's id.
        """
        with self._lock:
            current = self._checks.get(local.id)
            if current is not None and current.updated_at > local.updated_at:
                return  # changed again while syncing; stays dirty
            self._dirty_checks.discard(local.id)
            if stored.id != local.id:
                self._checks.pop(local.id, None)
                moved = [replace(r, check_id=stored.id) for r in self._results.pop(local.id, [])]
                self._results.setdefault(stored.id, []).extend(moved)
                self._dirty_results = {
                    rid: (replace(r, check_id=stored.id) if r.check_id == local.id else r)
                    for rid, r in self._dirty_results.items()
                }
            self._checks[stored.id] = replace(stored)

    def mark_result_synced(self, result_id: str) -> None:
        with self._lock:
            self._dirty_results.pop(result_id, None)

    def mark_delete_synced(self, key: tuple[str, str]) -> None:
        with self._lock:
            self._deleted.pop(key, None)

    # ── Internals ─────────────────────────────────────────────────────────

    def _find_key(self, name: str, kind: str) -> CheckDefinition | None:
        for check in self._checks.values():
            if check.name == name and check.kind.value == kind:
                return check
        return None

    def _append_result(self, result: CheckResult) -> None:
        results = self._results.setdefault(result.check_id, [])
        if any(r.id == result.id for r in results):
            return
        results.append(result)
        if len(results) > self._results_per_check:
            # Unsynced results stay in _dirty_results for the reconciler
            results.sort(key=lambda r: r.created_at, reverse=True)
            del results[self._results_per_check:]
