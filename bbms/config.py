"""
Configuration and settings for the monitoring backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    app_version: str = Field(default="1.0.0")
    log_level: str = Field(default="INFO")

    # Rubidex document ledger
    rubidex_api_url: Optional[str] = Field(default=None)
    rubidex_api_key: Optional[str] = Field(default=None)
    rubidex_collection_id: str = Field(default="bbms-readings")
    # Alerts land in the readings collection unless a dedicated one is set.
    rubidex_temp_alert_collection_id: Optional[str] = Field(default=None)
    rubidex_clearance: Optional[str] = Field(default=None)
    ledger_timeout_seconds: float = Field(default=30.0)

    # Identity service (token verification + audit)
    auth_service_url: Optional[str] = Field(default=None)
    identity_timeout_seconds: float = Field(default=10.0)

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)

    # Reconciliation and alerting
    reconcile_include_untyped: bool = Field(default=False)
    default_temperature_limit: float = Field(default=40.0)
    critical_margin: float = Field(default=10.0)
    device_temperature_limits: Dict[str, float] = Field(default_factory=dict)

    # Channel access
    monitoring_min_access_level: str = Field(default="basic")
    device_access_levels: Dict[str, str] = Field(default_factory=dict)

    # Pipeline
    monitor_enabled: bool = Field(default=True)
    monitor_poll_interval_seconds: float = Field(default=30.0)
    observer_queue_size: int = Field(default=256)

    # Alert write queue (Redis)
    redis_url: Optional[str] = Field(default=None)
    redis_queue_key: str = Field(default="bbms:alert-writes")
    alert_write_max_attempts: int = Field(default=5)
    alert_write_backoff_seconds: float = Field(default=2.0)
    run_inprocess_worker: bool = Field(default=True)

    @property
    def alert_collection_id(self) -> str:
        return self.rubidex_temp_alert_collection_id or self.rubidex_collection_id


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
