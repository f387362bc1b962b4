"""Tests for the SQLite primary and the in-memory fallback store."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from healthwatch.checks.models import CheckKind, CheckResult, Health
from healthwatch.store.base import DuplicateCheckError, StoreUnavailable
from healthwatch.store.memory import MemoryStore
from healthwatch.store.sqlite import SqliteStore

from conftest import make_check


def _result(check_id: str, minutes_ago: float = 0, status: Health = Health.HEALTHY) -> CheckResult:
    return CheckResult(
        check_id=check_id, status=status, details="ok",
        created_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
    )


@pytest.fixture
def sqlite_store(tmp_path: Path) -> SqliteStore:
    return SqliteStore(tmp_path / "store.db")


# ── SqliteStore ──────────────────────────────────────────────────────────────


class TestSqliteChecks:
    def test_create_and_find(self, sqlite_store: SqliteStore) -> None:
        check = sqlite_store.create(make_check("api", log_error_patterns=["x"]))
        found = sqlite_store.find_by_id(check.id)
        assert found is not None
        assert found.name == "api"
        assert found.kind == CheckKind.API
        assert found.log_error_patterns == ["x"]

    def test_duplicate_natural_key(self, sqlite_store: SqliteStore) -> None:
        sqlite_store.create(make_check("api"))
        with pytest.raises(DuplicateCheckError):
            sqlite_store.create(make_check("api"))

    def test_same_name_other_kind_allowed(self, sqlite_store: SqliteStore) -> None:
        sqlite_store.create(make_check("web"))
        sqlite_store.create(make_check("web", kind=CheckKind.PROCESS, process_keyword="nginx"))
        assert len(sqlite_store.find_all()) == 2

    def test_find_all_filters(self, sqlite_store: SqliteStore) -> None:
        sqlite_store.create(make_check("a"))
        sqlite_store.create(make_check("b", enabled=False))
        sqlite_store.create(make_check("c", kind=CheckKind.SERVER))
        assert [c.name for c in sqlite_store.find_all(enabled=True)] == ["a", "c"]
        assert [c.name for c in sqlite_store.find_all(kind=CheckKind.SERVER)] == ["c"]

    def test_update_ignores_unknown_fields(self, sqlite_store: SqliteStore) -> None:
        check = sqlite_store.create(make_check("api"))
        updated = sqlite_store.update(check.id, interval_seconds=120, kind="LOG", bogus=1)
        assert updated is not None
        assert updated.interval_seconds == 120
        assert updated.kind == CheckKind.API

    def test_update_missing(self, sqlite_store: SqliteStore) -> None:
        assert sqlite_store.update("nope", enabled=False) is None

    def test_delete_removes_results(self, sqlite_store: SqliteStore) -> None:
        check = sqlite_store.create(make_check("api"))
        sqlite_store.save_result(_result(check.id))
        assert sqlite_store.delete(check.id) is True
        assert sqlite_store.find_by_id(check.id) is None
        assert sqlite_store.get_results_by_check(check.id).total == 0
        assert sqlite_store.delete(check.id) is False

    def test_unreachable_path_raises_store_unavailable(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        store = SqliteStore(blocker / "sub" / "db.sqlite")
        with pytest.raises(StoreUnavailable):
            store.find_all()


class TestSqliteResults:
    def test_latest_per_check(self, sqlite_store: SqliteStore) -> None:
        sqlite_store.save_result(_result("c1", minutes_ago=5))
        newest = sqlite_store.save_result(_result("c1", status=Health.UNHEALTHY))
        sqlite_store.save_result(_result("c2"))
        latest = {r.check_id: r for r in sqlite_store.get_latest_results()}
        assert set(latest) == {"c1", "c2"}
        assert latest["c1"].id == newest.id

    def test_pagination_newest_first(self, sqlite_store: SqliteStore) -> None:
        for i in range(5):
            sqlite_store.save_result(_result("c1", minutes_ago=i))
        page = sqlite_store.get_results_by_check("c1", page=2, limit=2)
        assert page.total == 5
        assert len(page.results) == 2
        assert page.results[0].created_at > page.results[1].created_at

    def test_trim_results(self, sqlite_store: SqliteStore) -> None:
        sqlite_store.save_result(_result("c1", minutes_ago=60 * 24 * 40))
        sqlite_store.save_result(_result("c1"))
        assert sqlite_store.trim_results(days=30) == 1
        assert sqlite_store.get_results_by_check("c1").total == 1


class TestSqliteUpserts:
    def test_upsert_check_by_natural_key(self, sqlite_store: SqliteStore) -> None:
        original = sqlite_store.create(make_check("api", interval_seconds=60))
        offline_copy = make_check("api", interval_seconds=30)  # different local id
        stored = sqlite_store.upsert_check(offline_copy)
        assert stored.id == original.id
        assert stored.interval_seconds == 30
        assert len(sqlite_store.find_all()) == 1

    def test_upsert_check_rename_matches_id(self, sqlite_store: SqliteStore) -> None:
        original = sqlite_store.create(make_check("old"))
        renamed = replace(original, name="new")
        stored = sqlite_store.upsert_check(renamed)
        assert stored.id == original.id
        assert [c.name for c in sqlite_store.find_all()] == ["new"]

    def test_upsert_result_is_idempotent(self, sqlite_store: SqliteStore) -> None:
        result = _result("c1")
        assert sqlite_store.upsert_result(result) is True
        assert sqlite_store.upsert_result(replace(result, id="other")) is False
        assert sqlite_store.get_results_by_check("c1").total == 1

    def test_delete_by_key(self, sqlite_store: SqliteStore) -> None:
        sqlite_store.create(make_check("api"))
        assert sqlite_store.delete_by_key("api", CheckKind.API) is True
        assert sqlite_store.delete_by_key("api", CheckKind.API) is False


# ── MemoryStore ──────────────────────────────────────────────────────────────


class TestMemoryStore:
    def test_create_marks_dirty(self) -> None:
        mem = MemoryStore()
        check = mem.create(make_check("api"))
        assert mem.has_dirty()
        snap = mem.dirty_snapshot()
        assert [c.id for c in snap.checks] == [check.id]

    def test_duplicate_natural_key(self) -> None:
        mem = MemoryStore()
        mem.create(make_check("api"))
        with pytest.raises(DuplicateCheckError):
            mem.create(make_check("api"))

    def test_mirror_is_not_dirty(self) -> None:
        mem = MemoryStore()
        mem.mirror_check(make_check("api"))
        mem.mirror_result(_result("c1"))
        assert not mem.has_dirty()
        assert len(mem.find_all()) == 1

    def test_mirror_does_not_clobber_pending_write(self) -> None:
        mem = MemoryStore()
        check = mem.create(make_check("api", interval_seconds=30))
        mem.mirror_check(replace(check, interval_seconds=999))
        found = mem.find_by_id(check.id)
        assert found is not None and found.interval_seconds == 30

    def test_results_capped_per_check(self) -> None:
        mem = MemoryStore(results_per_check=3)
        for i in range(5):
            mem.save_result(_result("c1", minutes_ago=i))
        page = mem.get_results_by_check("c1")
        assert page.total == 3
        # Unsynced results survive the cap for reconciliation
        assert len(mem.dirty_snapshot().results) == 5

    def test_delete_records_tombstone(self) -> None:
        mem = MemoryStore()
        check = mem.create(make_check("api"))
        mem.save_result(_result(check.id))
        assert mem.delete(check.id) is True
        snap = mem.dirty_snapshot()
        assert snap.deleted == [("api", "API")]
        assert snap.checks == [] and snap.results == []

    def test_mark_check_synced_rekeys(self) -> None:
        mem = MemoryStore()
        local = mem.create(make_check("api"))
        mem.save_result(_result(local.id))
        stored = replace(local, id="primary-id")
        mem.mark_check_synced(local, stored)
        assert mem.find_by_id(local.id) is None
        assert mem.find_by_id("primary-id") is not None
        assert mem.get_results_by_check("primary-id").total == 1
        assert mem.dirty_snapshot().results[0].check_id == "primary-id"

    def test_mark_check_synced_skips_newer_local_edit(self) -> None:
        mem = MemoryStore()
        local = mem.create(make_check("api"))
        snapshot_copy = mem.dirty_snapshot().checks[0]
        mem.update(local.id, interval_seconds=45)
        mem.mark_check_synced(snapshot_copy, snapshot_copy)
        assert mem.has_dirty()

    def test_trim_results(self) -> None:
        mem = MemoryStore()
        mem.save_result(_result("c1", minutes_ago=60 * 24 * 10))
        mem.save_result(_result("c1"))
        assert mem.trim_results(days=7) == 1
