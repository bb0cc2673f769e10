"""Centralized configuration for kb-sync using Pydantic Settings."""

from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ObservabilityCollectorConfig(BaseModel):
    """OTLP collector settings shared by trace, metric, and log exporters."""

    enabled: bool = False
    collector_endpoint: str = "http://localhost:4318/v1/traces"
    otlp_protocol: Literal["grpc", "http"] = "http"
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: int = Field(default=10, ge=1)
    grpc_insecure: bool = True
    resource_attributes: dict[str, str] = Field(default_factory=dict)


class Settings(BaseSettings):
    """Strictly typed configuration loaded from environment variables.

    Every value that governs load placed on third-party sites (worker count,
    timeouts, retries, scheduler tick) lives here so operators can tune it
    without a code change.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        validate_default=True,
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Storage
    database_path: str = Field(default="data/kb_sync.sqlite", description="SQLite database file")

    # Sync job settings
    sync_worker_count: int = Field(default=4, ge=1, le=64, description="Concurrent page fetches per job")
    sync_job_timeout_seconds: int = Field(default=1800, ge=1, description="Wall-clock ceiling for a single job")
    lease_grace_seconds: int = Field(
        default=60, ge=0, description="Extra time before an unreleased job lease is considered abandoned"
    )
    job_retention_seconds: int = Field(default=300, ge=1, description="How long finished job snapshots stay pollable")
    job_checkpoint_seconds: float = Field(
        default=2.0, ge=0.0, description="Minimum interval between persisted progress checkpoints"
    )
    default_sync_interval_hours: int = Field(default=24, ge=1, le=168, description="Interval for new sources")

    # Scheduler settings
    scheduler_enabled: bool = Field(default=True, description="Run the periodic scheduler loop")
    scheduler_tick_seconds: float = Field(default=60.0, gt=0, description="Seconds between scheduler ticks")
    scheduler_max_jobs_per_tick: int = Field(default=10, ge=1, description="Maximum scheduled jobs started per tick")

    # HTTP/Request settings
    http_timeout: float = Field(default=30.0, gt=0, description="HTTP request timeout in seconds")
    http_connect_timeout: float = Field(default=10.0, gt=0, description="HTTP connect timeout in seconds")
    http_max_retries: int = Field(default=2, ge=0, le=10, description="Retries for a single page fetch")
    http_retry_backoff_seconds: float = Field(default=1.0, ge=0.0, description="Base delay for exponential backoff")
    http_user_agent: str = Field(
        default="kb-sync/0.1 (+https://github.com/kb-sync/kb-sync)", description="User-Agent sent to source sites"
    )
    discovery_max_attempts: int = Field(default=2, ge=1, le=10, description="Attempts per sitemap document")
    sitemap_max_depth: int = Field(default=5, ge=1, le=20, description="Maximum sitemap-index nesting depth")

    # Server settings
    host: str = Field(default="127.0.0.1", description="HTTP server host")
    port: int = Field(default=8080, ge=1, le=65535, description="HTTP server port")
    trusted_hosts: list[str] = Field(default_factory=list, description="Allowed Host headers (empty allows all)")

    # Logging
    log_level: str = Field(default="info", description="Logging level")
    log_json: bool = Field(default=True, description="Emit structured JSON logs")
    log_levels: dict[str, str] = Field(default_factory=dict, description="Per-logger level overrides")

    observability_collector: ObservabilityCollectorConfig = Field(default_factory=ObservabilityCollectorConfig)

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        if value.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value}")
        return value.lower()

    def stale_lease_seconds(self) -> int:
        """Age after which an unreleased job lease may be taken over."""
        return self.sync_job_timeout_seconds + self.lease_grace_seconds

    def build_http_headers(self) -> dict[str, str]:
        return {
            "User-Agent": self.http_user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        }
