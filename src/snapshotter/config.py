"""Configuration management for Hitcastor Snapshotter.

Loads connection strings, credentials and pipeline tuning from environment
variables using Pydantic. Secrets belong in .env (never hardcoded).

Usage:
    from snapshotter.config import get_settings

    settings = get_settings()
    print(settings.region)
    print(settings.max_retry_attempts)
"""

import math
from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_CHARTS_URL_TEMPLATE = (
    "https://charts.spotify.com/api/charts/regional-${REGION}-daily/latest"
)


class Settings(BaseSettings):
    """Snapshotter configuration from environment variables.

    Loads from .env file automatically. Validates on instantiation.
    Only the S3 credentials are conditionally required (when the S3 backend
    is selected); IPFS and Slack are optional and degrade gracefully.

    Attributes:
        region: Default chart region (lowercase, e.g. "global", "us")
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR)
        database_url: Ledger location, ``sqlite:///path`` or ``postgresql://...``
        object_store_backend: "s3" for S3/R2, "local" for a directory store
        max_retry_hours: Time budget used to derive the fetch attempt count
        initial_retry_delay_ms: First fetch backoff delay
        min_valid_items: Quality gate for normalization
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore unknown env vars
    )

    # System Settings
    region: str = Field(default="global", min_length=1, description="Default chart region")
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: str | None = Field(default=None, description="Optional log file path")

    # Ledger
    database_url: str = Field(
        default="sqlite:///data/snapshots.db",
        description="Snapshot ledger URL (sqlite:/// or postgresql://)",
    )
    database_pool_max: int = Field(default=5, ge=1, le=50, description="Postgres pool size")

    # Object Storage (S3 / R2 / local)
    object_store_backend: str = Field(default="s3", description="'s3' or 'local'")
    object_store_endpoint: str | None = Field(default=None, description="S3-compatible endpoint URL")
    object_store_bucket: str = Field(default="hitcastor-evidence", description="Evidence bucket")
    object_store_access_key: str | None = Field(default=None, description="S3 access key id")
    object_store_secret_key: str | None = Field(default=None, description="S3 secret access key")
    object_store_force_path_style: bool = Field(default=True, description="Path-style S3 addressing")
    object_store_object_lock: bool = Field(default=True, description="Apply COMPLIANCE object lock")
    object_lock_days: int = Field(default=30, ge=1, description="Retention window for object lock")
    local_store_dir: str = Field(default="data/evidence", description="Root for the local store")
    verify_existing_artifacts: bool = Field(
        default=False,
        description="Read back existing artifacts and hash them instead of trusting stored metadata",
    )

    # IPFS (optional, anchoring disabled if absent)
    ipfs_endpoint: str | None = Field(default=None, description="IPFS HTTP API base URL")
    ipfs_token: str | None = Field(default=None, description="IPFS bearer token")

    # Spotify Charts
    spotify_charts_url_template: str = Field(
        default=DEFAULT_CHARTS_URL_TEMPLATE,
        description="Chart CSV URL with ${REGION} and optional ${DATE} placeholders",
    )
    fetch_timeout_seconds: float = Field(default=30.0, gt=0, description="Chart request timeout")

    # Alerts (optional)
    slack_webhook_url: str | None = Field(default=None, description="Slack webhook for fetch alerts")

    # Retry configuration
    max_retry_hours: float = Field(default=36, gt=0, description="Fetch retry time budget (hours)")
    initial_retry_delay_ms: int = Field(default=300_000, ge=1, description="First backoff delay (ms)")

    # Normalization
    min_valid_items: int = Field(default=50, ge=1, le=100, description="Minimum valid chart rows")

    # Scheduling / worker
    schedule_hour: int = Field(default=0, ge=0, le=23, description="Daily trigger hour (UTC)")
    schedule_minute: int = Field(default=0, ge=0, le=59, description="Daily trigger minute (UTC)")
    job_attempts: int = Field(default=3, ge=1, description="Worker attempts per job")
    job_backoff_seconds: float = Field(default=30.0, ge=0, description="Worker retry base delay")

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: str) -> str:
        """Regions are stored lowercase."""
        return v.strip().lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid:
            raise ValueError(f"log_level must be one of {valid}, got {v}")
        return v_upper

    @field_validator("object_store_backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Ensure object store backend is valid."""
        v_lower = v.lower()
        if v_lower not in {"s3", "local"}:
            raise ValueError(f"object_store_backend must be 's3' or 'local', got '{v}'")
        return v_lower

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Only SQLite and PostgreSQL ledgers are supported."""
        if not v.startswith(("sqlite:///", "postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with sqlite:///, postgresql:// or postgres://"
            )
        return v

    @model_validator(mode="after")
    def validate_s3_credentials(self) -> "Settings":
        """The S3 backend cannot start without an endpoint and credentials."""
        if self.object_store_backend == "s3":
            missing = [
                name
                for name in (
                    "object_store_endpoint",
                    "object_store_access_key",
                    "object_store_secret_key",
                )
                if not getattr(self, name)
            ]
            if missing:
                raise ValueError(
                    f"S3 object store requires: {', '.join(missing)}"
                )
        return self

    @property
    def max_retry_attempts(self) -> int:
        """Fetch attempts derived from the time budget.

        ceil(max_retry_hours in ms / initial delay). This is an attempt count,
        not a wall-clock deadline; see DESIGN.md.
        """
        return max(1, math.ceil(self.max_retry_hours * 3600 * 1000 / self.initial_retry_delay_ms))

    @property
    def ipfs_enabled(self) -> bool:
        return bool(self.ipfs_endpoint and self.ipfs_token)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings, loaded on first use."""
    return Settings()
