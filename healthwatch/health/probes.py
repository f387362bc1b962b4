"""Probes — one async routine per check kind.

Supports: API (HTTP GET), PROCESS (process table / listening port),
SERVICE (shell command), SERVER (host load + memory), LOG (freshness,
size, error patterns). Each probe turns a CheckDefinition into an Outcome;
``ProbeRegistry.run`` is the boundary past which no exception escapes.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import httpx
import psutil

from healthwatch.checks.models import CheckDefinition, CheckKind, Outcome

logger = logging.getLogger(__name__)

Probe = Callable[[CheckDefinition], Awaitable[Outcome]]


@dataclass
class ProbeLimits:
    """Thresholds the probes read from configuration."""

    server_load_threshold: float = 0.8
    server_min_free_memory_pct: float = 20.0
    log_tail_bytes: int = 65_536
    command_timeout_seconds: float = 30.0


# ── API ──────────────────────────────────────────────────────────────────────


async def probe_api(check: CheckDefinition) -> Outcome:
    """HTTP GET; healthy iff the status code is 2xx."""
    if not check.endpoint:
        return Outcome(healthy=False, details="No endpoint URL provided")

    timeout = (check.timeout_ms or 5_000) / 1000
    t0 = time.perf_counter()
    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            resp = await client.get(check.endpoint)
        latency = round((time.perf_counter() - t0) * 1000, 1)
    except httpx.TimeoutException:
        return Outcome(
            healthy=False, details=f"API health check timed out ({check.timeout_ms}ms)",
            latency_ms=float(check.timeout_ms), transient=True,
        )
    except httpx.TransportError as e:
        latency = round((time.perf_counter() - t0) * 1000, 1)
        return Outcome(
            healthy=False, details=f"API health check failed: {type(e).__name__}: {e}",
            latency_ms=latency, transient=True,
        )

    if 200 <= resp.status_code < 300:
        return Outcome(
            healthy=True,
            details=f"API health check passed. Status code: {resp.status_code}",
            latency_ms=latency,
        )
    return Outcome(
        healthy=False,
        details=f"API health check failed. Status code: {resp.status_code}",
        latency_ms=latency,
    )


# ── Process ──────────────────────────────────────────────────────────────────


async def probe_process(check: CheckDefinition) -> Outcome:
    """Look up a process by keyword and/or an open local port."""
    if not check.process_keyword and not check.port:
        return Outcome(healthy=False, details="No process keyword or port provided")

    parts: list[str] = []
    if check.port:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection("127.0.0.1", check.port),
                timeout=(check.timeout_ms or 5_000) / 1000,
            )
            writer.close()
            await writer.wait_closed()
        except (OSError, asyncio.TimeoutError) as e:
            return Outcome(
                healthy=False, details=f"Port {check.port} is not open: {e}", transient=True,
            )
        parts.append(f"Port {check.port} is open")

    if not check.process_keyword:
        return Outcome(healthy=True, details=", ".join(parts))

    loop = asyncio.get_running_loop()
    match = await loop.run_in_executor(None, _find_process, check.process_keyword)
    if match is None:
        return Outcome(
            healthy=False,
            details=f'Process with keyword "{check.process_keyword}" not found',
        )

    pid, command, cpu, mem, hung = match
    parts.append(
        f"PID: {pid}, Command: {command}, Memory: {mem:.1f}%, CPU: {cpu:.1f}%, Hung: {hung}"
    )
    return Outcome(
        healthy=True,
        details=", ".join(parts),
        cpu_usage=cpu,
        memory_usage=mem,
        extra={"pid": pid, "hung": hung},
    )


def _find_process(keyword: str) -> tuple[int, str, float, float, bool] | None:
    pattern = re.compile(keyword)
    own_pid = psutil.Process().pid
    for proc in psutil.process_iter(["pid", "name", "cmdline"]):
        try:
            info = proc.info
            if info["pid"] == own_pid:
                continue
            command = " ".join(info.get("cmdline") or []) or (info.get("name") or "")
            if not pattern.search(command):
                continue
            cpu = proc.cpu_percent(interval=0.1)
            mem = proc.memory_percent()
            hung = proc.status() == psutil.STATUS_DISK_SLEEP
            return info["pid"], command, float(cpu), float(mem), hung
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return None


# ── Service (shell command) ──────────────────────────────────────────────────


async def run_command(command: str, timeout: float) -> tuple[int, str, str]:
    """Run a shell command; returns (exit code, stdout, stderr)."""
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return (
        proc.returncode or 0,
        stdout.decode(errors="replace").strip(),
        stderr.decode(errors="replace").strip(),
    )


def make_service_probe(limits: ProbeLimits) -> Probe:
    async def probe_service(check: CheckDefinition) -> Outcome:
        """Healthy iff the command exits 0 and stdout contains expected_output."""
        if not check.custom_command:
            return Outcome(healthy=False, details="No custom command provided")

        try:
            code, stdout, stderr = await run_command(
                check.custom_command, limits.command_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return Outcome(
                healthy=False,
                details=f"Command timed out after {limits.command_timeout_seconds:.0f}s",
                transient=True,
            )
        except OSError as e:
            return Outcome(healthy=False, details=f"Error executing command: {e}", transient=True)

        if code != 0:
            return Outcome(
                healthy=False,
                details=f"Command exited with {code}: {(stderr or stdout)[:500]}",
                transient=True,
            )
        if check.expected_output and check.expected_output not in stdout:
            return Outcome(
                healthy=False, details=f"Expected output not found. Response: {stdout[:500]}",
            )
        return Outcome(
            healthy=True, details=f"Command executed successfully. Response: {stdout[:500]}",
        )

    return probe_service


# ── Server (host metrics) ────────────────────────────────────────────────────


def make_server_probe(limits: ProbeLimits) -> Probe:
    async def probe_server(check: CheckDefinition) -> Outcome:
        """Healthy iff 1-minute load ≤ threshold and free memory ≥ threshold."""
        load = psutil.getloadavg()[0]
        mem = psutil.virtual_memory()
        free_pct = mem.available / mem.total * 100 if mem.total else 0.0

        high_load = load > limits.server_load_threshold
        low_memory = free_pct < limits.server_min_free_memory_pct
        details = f"CPU load: {load:.2f}, Free memory: {free_pct:.2f}%"
        if high_load:
            details += ", High CPU usage detected"
        if low_memory:
            details += ", Low memory detected"

        return Outcome(
            healthy=not (high_load or low_memory),
            details=details,
            cpu_usage=round(load, 2),
            memory_usage=round(100 - free_pct, 2),
        )

    return probe_server


# ── Log file ─────────────────────────────────────────────────────────────────


def make_log_probe(limits: ProbeLimits) -> Probe:
    async def probe_log(check: CheckDefinition) -> Outcome:
        """Check freshness, size and error patterns in the file's tail."""
        if not check.log_file_path:
            return Outcome(healthy=False, details="No log file path provided")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _inspect_log, check, limits.log_tail_bytes)

    return probe_log


def _inspect_log(check: CheckDefinition, tail_bytes: int) -> Outcome:
    path = Path(check.log_file_path)
    try:
        stat = path.stat()
    except FileNotFoundError:
        return Outcome(healthy=False, details=f"Log file not found: {path}")

    modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
    age = time.time() - stat.st_mtime
    size_mb = stat.st_size / (1024 * 1024)
    is_fresh = age <= check.log_freshness_seconds

    with path.open("rb") as fh:
        fh.seek(max(stat.st_size - tail_bytes, 0))
        tail = fh.read().decode(errors="replace")
    matched = [
        p for p in check.log_error_patterns
        if re.search(p, tail, re.IGNORECASE | re.MULTILINE)
    ]

    problems: list[str] = []
    if not is_fresh:
        problems.append(f"stale: last written {age:.0f}s ago (limit {check.log_freshness_seconds}s)")
    if size_mb > check.log_max_size_mb:
        problems.append(f"too large: {size_mb:.1f}MB (limit {check.log_max_size_mb:g}MB)")
    if matched:
        problems.append(f"error patterns matched: {', '.join(matched)}")

    extra = {
        "last_modified": modified.isoformat(),
        "size_bytes": stat.st_size,
        "matched_error_patterns": matched,
        "is_fresh": is_fresh,
    }
    if problems:
        return Outcome(healthy=False, details=f"Log {path}: " + "; ".join(problems), extra=extra)
    return Outcome(
        healthy=True, details=f"Log {path} OK ({size_mb:.1f}MB, updated {age:.0f}s ago)", extra=extra,
    )


# ── Registry ─────────────────────────────────────────────────────────────────


class ProbeRegistry:
    """Maps check kinds to probes and shields callers from probe errors."""

    def __init__(self, limits: ProbeLimits | None = None) -> None:
        self.limits = limits or ProbeLimits()
        self._probes: dict[CheckKind, Probe] = {
            CheckKind.API: probe_api,
            CheckKind.PROCESS: probe_process,
            CheckKind.SERVICE: make_service_probe(self.limits),
            CheckKind.SERVER: make_server_probe(self.limits),
            CheckKind.LOG: make_log_probe(self.limits),
        }

    def register(self, kind: CheckKind, probe: Probe) -> None:
        self._probes[CheckKind(kind)] = probe

    def get(self, kind: CheckKind) -> Probe | None:
        return self._probes.get(kind)

    async def run(self, check: CheckDefinition) -> Outcome:
        """Run the probe for ``check``; any error becomes an Unhealthy outcome."""
        probe = self._probes.get(check.kind)
        if probe is None:
            return Outcome(healthy=False, details=f"Unknown check kind: {check.kind}")
        try:
            return await probe(check)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Probe %s (%s) raised: %s", check.name, check.kind.value, e)
            return Outcome(
                healthy=False,
                details=f"Error executing health check: {type(e).__name__}: {e}",
                transient=True,
            )
