from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseModel):
    max_percentage: float = Field(40.0, gt=0.0, le=100.0, description="Hard ceiling of a worker's capacity, in percent.")
    warning_threshold: float = Field(35.0, gt=0.0, le=100.0, description="Usage percentage that triggers a budget warning.")
    critical_ratio: float = Field(
        0.9,
        gt=0.0,
        le=1.0,
        description="Fraction of the ceiling the aggregate usage must exceed before budget.critical is published.",
    )
    max_items: int = Field(1000, ge=1, description="Maximum number of consumption items held per worker window.")
    base_capacity: int = Field(8000, ge=1, description="Budget units of a worker with a capacity multiplier of 1.0.")
    units_per_char: float = Field(0.25, gt=0.0, description="Budget units charged per character of key or content.")
    monitor_interval_seconds: float = Field(30.0, gt=0.0)

    @model_validator(mode="after")
    def _check_thresholds(self) -> "LedgerSettings":
        if self.warning_threshold > self.max_percentage:
            raise ValueError("warning_threshold must not exceed max_percentage")
        return self


class ApprovalSettings(BaseModel):
    timeout_low_ms: int = Field(60_000, ge=1)
    timeout_medium_ms: int = Field(180_000, ge=1)
    timeout_high_ms: int = Field(300_000, ge=1)
    timeout_critical_ms: int = Field(600_000, ge=1)
    history_limit: int = Field(1000, ge=1, description="Resolved requests retained in memory for audit.")
    command_preview_chars: int = Field(100, ge=10, description="Commands are truncated to this length in notifications.")
    notify_on_resolution: bool = Field(True, description="Send confirmation notifications once a request is resolved.")


class DispatchSettings(BaseModel):
    max_concurrent_tasks: int = Field(3, ge=1)
    poll_interval_seconds: float = Field(5.0, gt=0.0)
    consumption_headroom_ratio: float = Field(
        0.8,
        gt=0.0,
        le=1.0,
        description="Workers consuming less than this share of their capacity receive a selection bonus.",
    )


class NotificationSettings(BaseModel):
    enabled: bool = Field(True)
    channel_timeout_seconds: float = Field(10.0, gt=0.0)
    max_retries: int = Field(2, ge=0, description="Retries per channel for transient delivery failures.")
    retry_backoff_seconds: float = Field(0.5, ge=0.0)
    log_channel_enabled: bool = Field(True, description="Always mirror notifications into the structured log.")
    pushover_token: str | None = Field(default=None)
    pushover_user: str | None = Field(default=None)
    pushover_base_url: str = Field("https://api.pushover.net/1")
    twilio_account_sid: str | None = Field(default=None)
    twilio_auth_token: str | None = Field(default=None)
    twilio_from_number: str | None = Field(default=None)
    twilio_to_number: str | None = Field(default=None)
    twilio_base_url: str = Field("https://api.twilio.com/2010-04-01")
    webhook_url: str | None = Field(default=None, description="Optional webhook receiving JSON notification payloads.")


class PersistenceSettings(BaseModel):
    enabled: bool = Field(False, description="Checkpoint ledger windows and pending approvals to disk.")
    state_dir: Path = Field(Path(".sentra") / "state")


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_json: bool = Field(True, description="Render log lines as JSON; console output otherwise.")
    event_history_limit: int = Field(500, ge=1)


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")
    api_v1_prefix: str = Field("/api/v1")
    api_host: str = Field("127.0.0.1")
    api_port: int = Field(8000, ge=1, le=65535)

    ledger: LedgerSettings = Field(default_factory=LedgerSettings)  # type: ignore[arg-type]
    approvals: ApprovalSettings = Field(default_factory=ApprovalSettings)  # type: ignore[arg-type]
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)  # type: ignore[arg-type]
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)  # type: ignore[arg-type]
    persistence: PersistenceSettings = Field(default_factory=PersistenceSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_prefix="SENTRA_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()
