from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Storage
    db_path: Path = Path("data/healthwatch.db")
    checks_file: Path = Path("checks.yaml")
    memory_results_per_check: int = Field(100, ge=1)
    result_retention_days: int = Field(30, ge=1)

    # Scheduling
    default_check_interval: int = Field(300, ge=1)  # seconds
    min_check_interval: int = Field(10, ge=1)
    resync_interval: int = Field(900, ge=1)  # re-read check definitions
    shutdown_grace_seconds: float = Field(10.0, ge=0)

    # Execution / retry
    retry_attempts: int = Field(3, ge=1)
    retry_base_delay: float = Field(1.0, ge=0)  # backoff = 2^attempt * base
    command_timeout_seconds: float = Field(30.0, gt=0)
    restart_threshold: int = Field(3, ge=1)

    # Resilient store background loops
    reachability_interval: float = Field(30.0, gt=0)
    reachability_max_interval: float = Field(300.0, gt=0)
    reconcile_interval: float = Field(60.0, gt=0)

    # Probe thresholds
    server_load_threshold: float = 0.8  # 1-minute load average
    server_min_free_memory_pct: float = 20.0
    log_tail_bytes: int = Field(65_536, ge=1)

    # Incidents / severity
    critical_latency_ms: float = 10_000
    critical_unhealthy_count: int = 3  # more than this many failing checks → critical

    # Notifications
    throttle_minutes: int = Field(60, ge=0)
    default_recipients: str = ""  # comma separated fallback list
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    email_from: str = "healthwatch@localhost"
    slack_webhook_url: str = ""
    slack_channel: str = ""

    # Logging
    log_level: str = "INFO"

    @property
    def default_recipient_list(self) -> list[str]:
        return [r.strip() for r in self.default_recipients.split(",") if r.strip()]
