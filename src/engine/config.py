# src/engine/config.py
"""
Settings: environment driven configuration for the scan queue, the workers and the API.
"""
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="HUNTER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite:///./hunter_scans.db"

    # Leases and retries
    lease_seconds: int = Field(300, gt=0)
    discovery_timeout_seconds: float = Field(240.0, gt=0)
    max_attempts: int = Field(3, ge=1)
    retry_base_delay_seconds: float = Field(30.0, gt=0)
    retry_max_delay_seconds: float = Field(900.0, gt=0)
    max_pages_per_platform: int = Field(10, ge=1)

    # Admission and concurrent lease caps (0 disables)
    max_running_scans_per_project: int = Field(1, ge=0)
    max_concurrent_jobs_per_project: int = Field(2, ge=0)
    max_global_concurrent_jobs: int = Field(20, ge=0)

    # Per-platform circuit breaker (threshold 0 disables)
    circuit_breaker_threshold: int = Field(3, ge=0)
    circuit_breaker_reset_seconds: float = Field(300.0, gt=0)

    # Workers
    poll_seconds: float = Field(5.0, gt=0)
    worker_count: int = Field(2, ge=1)
    run_workers: bool = False
    store_retry_delay_seconds: float = Field(1.0, gt=0)
    store_retry_max_delay_seconds: float = Field(30.0, gt=0)
    classification_queue_size: int = Field(100, ge=1)

    # Observational health thresholds
    health_pending_threshold: int = 50
    health_failed_threshold: int = 10
    health_failed_window_seconds: int = 3600

    # "package.module:callable" returning a SourceRegistry
    source_factory: Optional[str] = None

    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_timeouts(self):
        if self.discovery_timeout_seconds >= self.lease_seconds:
            raise ValueError("discovery_timeout_seconds must be lower than lease_seconds")
        if self.retry_base_delay_seconds > self.retry_max_delay_seconds:
            raise ValueError("retry_base_delay_seconds must not exceed retry_max_delay_seconds")
        return self
