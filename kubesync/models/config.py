"""Pydantic configuration models.

Defaults mirror the retry policy declared by the sync configuration
(5 attempts, 5s base delay, factor 2, capped at 3 minutes).
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator

_LOG_LEVELS = ("debug", "info", "warning", "error")


class SourceConfig(BaseModel):
    """Desired-state source (HTTP endpoint serving the decoded document)."""

    url: str = ""
    token: str = ""
    timeout_seconds: float = 10.0


class StoreConfig(BaseModel):
    """Live-cluster store selection."""

    backend: Literal["kubernetes", "memory"] = "kubernetes"
    timeout_seconds: float = 10.0


class SyncConfig(BaseModel):
    """Drift loop policy."""

    interval_seconds: float = 30.0
    auto_sync: bool = True
    self_heal: bool = True
    prune: bool = True
    retry_limit: int = 5
    retry_backoff_seconds: float = 5.0
    retry_factor: float = 2.0
    retry_max_backoff_seconds: float = 180.0
    history_limit: int = 10
    history_persistence_enabled: bool = False
    history_db_path: str = "kubesync.db"


class HealthConfig(BaseModel):
    grace_seconds: float = 300.0


class DeliveryConfig(BaseModel):
    poll_interval_seconds: float = 5.0


class AutoscaleConfig(BaseModel):
    enabled: bool = True
    interval_seconds: float = 15.0
    cooldown_seconds: float = 300.0
    min_change: float = 0.1


class MetricsSourceConfig(BaseModel):
    prometheus_url: str = ""
    timeout_seconds: float = 5.0


class NotificationsConfig(BaseModel):
    slack_webhook_url: str = ""


class APIConfig(BaseModel):
    port: int = 8080


class LogConfig(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def validate_level(cls, value: str) -> str:
        normalised = value.lower()
        if normalised not in _LOG_LEVELS:
            raise ValueError(f"Invalid log level: {value!r}")
        return normalised


class KubeSyncConfig(BaseModel):
    """Root configuration object produced by :func:`kubesync.config.load_config`."""

    app_name: str = "default"
    source: SourceConfig = Field(default_factory=SourceConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    autoscale: AutoscaleConfig = Field(default_factory=AutoscaleConfig)
    metrics: MetricsSourceConfig = Field(default_factory=MetricsSourceConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    log: LogConfig = Field(default_factory=LogConfig)
