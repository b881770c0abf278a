"""Environment-driven settings for dbplane.

All configuration is read once from ``DBPLANE_*`` environment variables (or a
``.env`` file) into a validated :class:`DbplaneSettings`.  Machines never read
the environment directly; they receive settings through the
:class:`~dbplane.remote.services.Services` container.

Examples:
    >>> from dbplane.core.settings import DbplaneSettings
    >>> s = DbplaneSettings(backup_retention_days=14)
    >>> s.backup_retention_days
    14

Tags:
    settings, configuration, pydantic, environment, dbplane
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DbplaneSettings(BaseSettings):
    """Settings for the control plane, its worker and its fleet defaults.

    Fields
    ──────
    database_url      : SQLAlchemy URL of the control-plane store
    worker_*          : polling loop tuning
    lease_ttl_seconds : how long a worker may hold a process before another may steal it
    default_*         : versions, sizes and location for newly assembled clusters
    backup_*          : wal-g bucket and retention
    e2e_test          : collapse restore-window offsets for end-to-end runs
    pulse_*           : availability escalation thresholds
    """

    model_config = SettingsConfigDict(
        env_prefix="DBPLANE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Database ─────────────────────────────────────────────────
    database_url: str = "sqlite:///dbplane.db"
    db_echo: bool = False

    # ── Worker ───────────────────────────────────────────────────
    worker_poll_interval: float = Field(default=1.0, ge=0.05)
    worker_batch_size: int = Field(default=20, ge=1)
    worker_max_workers: int = Field(default=4, ge=1)
    lease_ttl_seconds: int = Field(default=120, ge=5)

    # ── Collaborators ────────────────────────────────────────────
    # "module:callable" returning a Services for the worker and CLI
    services_factory: str | None = None

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "console"
    service_name: str = "dbplane"

    # ── Fleet defaults ───────────────────────────────────────────
    provider: str = "gcp"
    default_location: str = "us-central1"
    default_vm_size: str = "n1-standard-2"
    default_storage_size_gib: int = 50
    default_lantern_version: str = "0.3.3"
    default_extras_version: str = "0.2.3"
    default_minor_version: str = "1"
    container_image: str = "lanterndata/lantern-self-hosted"
    postgres_version: str = "15"
    boot_image: str = "ubuntu-2204-jammy-v20240319"
    max_storage_autoresize_gib: int = 1024

    # ── Backups ──────────────────────────────────────────────────
    backup_bucket: str = "walg-dev-backups"
    backup_retention_days: int = Field(default=7, ge=1)
    e2e_test: bool = False

    # ── DNS / TLS ────────────────────────────────────────────────
    top_domain: str = "db.lantern.dev"
    dns_email: str = "ops@lantern.dev"
    dns_token: str = ""
    dns_zone_id: str = ""

    # ── Pulse ────────────────────────────────────────────────────
    pulse_down_threshold: int = Field(default=3, ge=1)
    pulse_down_timeout_seconds: int = 30
    max_auto_restarts: int = Field(default=3, ge=0)

    @field_validator("log_format")
    @classmethod
    def _known_log_format(cls, value: str) -> str:
        if value not in ("console", "json"):
            raise ValueError("log_format must be 'console' or 'json'")
        return value


@lru_cache(maxsize=1)
def get_settings() -> DbplaneSettings:
    """Process-wide settings, loaded on first use."""
    return DbplaneSettings()
