from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Identity
    service_name: str = Field("context-engine", alias="SERVICE_NAME")
    service_version: str = Field("0.1.0", alias="SERVICE_VERSION")
    node_name: str = Field("local", alias="NODE_NAME")
    port: int = Field(8330, alias="PORT")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Bus
    flowstate_bus_url: str = Field(
        "redis://localhost:6379/0",
        validation_alias=AliasChoices("FLOWSTATE_BUS_URL", "REDIS_URL"),
    )
    flowstate_bus_enabled: bool = Field(True, alias="FLOWSTATE_BUS_ENABLED")
    flowstate_bus_enforce_catalog: bool = Field(False, alias="FLOWSTATE_BUS_ENFORCE_CATALOG")
    bus_connect_timeout_sec: float = Field(10.0, alias="BUS_CONNECT_TIMEOUT_SEC")

    # Inbound signal channels
    channel_ide_activity: str = Field("ide-activity", alias="CHANNEL_IDE_ACTIVITY")
    channel_git_events: str = Field("git-events", alias="CHANNEL_GIT_EVENTS")
    channel_calendar_events: str = Field("calendar-events", alias="CHANNEL_CALENDAR_EVENTS")
    channel_biometric_data: str = Field("biometric-data", alias="CHANNEL_BIOMETRIC_DATA")

    # Outbound channels
    channel_context_changes: str = Field("context-changes", alias="CHANNEL_CONTEXT_CHANGES")
    channel_context_predictions: str = Field("context-predictions", alias="CHANNEL_CONTEXT_PREDICTIONS")

    # Store
    store_redis_url: str = Field(
        "redis://localhost:6379/1",
        validation_alias=AliasChoices("STORE_REDIS_URL", "CONTEXT_STORE_REDIS_URL"),
    )
    store_key_prefix: str = Field("flowstate:context", alias="STORE_KEY_PREFIX")
    event_retention_days: int = Field(30, alias="EVENT_RETENTION_DAYS")
    snapshot_ttl_sec: int = Field(86400, alias="SNAPSHOT_TTL_SEC")
    max_patterns_per_user: int = Field(1000, alias="MAX_PATTERNS_PER_USER")

    # Engine
    freshness_window_sec: float = Field(300.0, alias="CONTEXT_FRESHNESS_SEC")
    prediction_cache_ttl_sec: float = Field(300.0, alias="PREDICTION_CACHE_TTL_SEC")

    # Models (best effort)
    activity_model_path: Optional[str] = Field("models/activity-classifier.joblib", alias="ACTIVITY_MODEL_PATH")
    sequence_model_path: Optional[str] = Field("models/sequence-predictor.joblib", alias="SEQUENCE_MODEL_PATH")
    model_load_timeout_sec: float = Field(10.0, alias="MODEL_LOAD_TIMEOUT_SEC")

    # Chassis
    heartbeat_interval_sec: float = Field(10.0, alias="HEARTBEAT_INTERVAL_SEC")
    health_channel: str = Field("system.health", alias="FLOWSTATE_HEALTH_CHANNEL")
    error_channel: str = Field("system.error", alias="FLOWSTATE_ERROR_CHANNEL")
    shutdown_grace_sec: float = Field(10.0, alias="FLOWSTATE_SHUTDOWN_GRACE_SEC")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
