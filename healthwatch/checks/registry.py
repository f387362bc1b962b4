"""Check registry — loads checks.yaml into typed CheckDefinitions.

The file seeds the store; once imported, the store is the source of truth
and the scheduler reads definitions from it.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from .models import CheckDefinition, CheckKind

if TYPE_CHECKING:
    from healthwatch.store.base import Store

logger = logging.getLogger(__name__)


class CheckRegistry:
    """Loads and caches check definitions from a YAML file."""

    def __init__(self, path: Path, default_interval: int = 300) -> None:
        self._path = Path(path)
        self._default_interval = default_interval
        self._checks: list[CheckDefinition] = []
        self._loaded = False

    def load(self, force: bool = False) -> list[CheckDefinition]:
        """Parse the YAML file and return the check list."""
        if self._loaded and not force:
            return self._checks

        self._checks = []
        if not self._path.exists():
            logger.warning("Check registry file not found: %s", self._path)
            self._loaded = True
            return self._checks

        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            logger.error("Failed to parse %s: %s", self._path, e)
            self._loaded = True
            return self._checks

        seen: set[tuple[str, str]] = set()
        for entry in raw.get("checks", []) or []:
            try:
                check = parse_check(entry, self._default_interval)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed check entry: %s", e)
                continue
            if check.natural_key in seen:
                logger.warning("Skipping duplicate check %s/%s", check.name, check.kind.value)
                continue
            seen.add(check.natural_key)
            self._checks.append(check)

        self._loaded = True
        logger.info("Loaded %d checks from %s", len(self._checks), self._path)
        return self._checks

    @property
    def checks(self) -> list[CheckDefinition]:
        return self.load()

    def sync_to(self, store: Store) -> tuple[int, int]:
        """Create or update every registry check in ``store`` by name+kind.

        Returns ``(created, updated)``.
        """
        existing = {c.natural_key: c for c in store.find_all()}
        created = updated = 0
        for check in self.checks:
            current = existing.get(check.natural_key)
            if current is None:
                store.create(check)
                created += 1
                continue
            fields = {k: getattr(check, k) for k in _CONFIG_FIELDS}
            store.update(current.id, **fields)
            updated += 1
        logger.info("Registry sync: %d created, %d updated", created, updated)
        return created, updated


# Definition fields owned by the registry file (runtime counters are not)
_CONFIG_FIELDS = frozenset({
    "enabled", "interval_seconds", "endpoint", "timeout_ms", "process_keyword",
    "port", "custom_command", "expected_output", "log_file_path",
    "log_freshness_seconds", "log_max_size_mb", "log_error_patterns",
    "restart_command", "restart_threshold", "notify_on_failure",
})


def parse_check(raw: dict[str, Any], default_interval: int = 300) -> CheckDefinition:
    kind = CheckKind(str(raw["kind"]).upper())
    patterns = raw.get("log_error_patterns") or []
    if isinstance(patterns, str):
        patterns = [patterns]
    return CheckDefinition(
        name=str(raw["name"]),
        kind=kind,
        enabled=bool(raw.get("enabled", True)),
        interval_seconds=int(raw.get("interval_seconds", default_interval)),
        endpoint=raw.get("endpoint", ""),
        timeout_ms=int(raw.get("timeout_ms", 5_000)),
        process_keyword=raw.get("process_keyword", ""),
        port=raw.get("port"),
        custom_command=raw.get("custom_command", ""),
        expected_output=raw.get("expected_output", ""),
        log_file_path=raw.get("log_file_path", ""),
        log_freshness_seconds=int(raw.get("log_freshness_seconds", 3_600)),
        log_max_size_mb=float(raw.get("log_max_size_mb", 100.0)),
        log_error_patterns=[str(p) for p in patterns],
        restart_command=raw.get("restart_command", ""),
        restart_threshold=raw.get("restart_threshold"),
        notify_on_failure=bool(raw.get("notify_on_failure", True)),
    )
