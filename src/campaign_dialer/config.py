"""Application configuration."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseModel):
    """Relational store configuration."""

    url: str = "sqlite+aiosqlite:///data/dialer.db"
    echo: bool = False


class TelephonySettings(BaseModel):
    """Voice telephony provider configuration."""

    provider: str = "vapi"  # vapi, mock
    api_url: str = "https://api.vapi.ai"
    api_key: str = ""
    request_timeout: float = 30.0

    # Webhook verification
    webhook_secret: str = ""
    validate_signatures: bool = True


class DispatchSettings(BaseModel):
    """Call dispatch queue configuration."""

    enabled: bool = True
    interval_seconds: float = 30.0
    spacing_seconds: float = 30.0
    max_daily_calls_per_number: int = 100
    number_cooldown_seconds: int = 30
    callback_batch_size: int = 50


class ComplianceSettings(BaseModel):
    """Admission control configuration."""

    # Legal floor (lead-local hours)
    floor_start_hour: int = 8
    floor_end_hour: int = 21

    dnc_block_days: int = 365
    attempt_window_days: int = 30
    attempt_block_days: int = 30
    violation_history_days: int = 365

    # External DNC registry (disabled when url or key is empty)
    dnc_api_url: str = ""
    dnc_api_key: str = ""
    dnc_timeout: float = 5.0

    # Optional YAML file replacing the built-in jurisdiction table
    rules_file: str = ""


class JobSettings(BaseModel):
    """Durable job processor configuration."""

    enabled: bool = True
    concurrency: int = 3
    poll_interval_seconds: float = 1.0
    stale_call_hours: float = 2.0
    cleanup_interval_seconds: float = 300.0
    transient_retry_delay_seconds: float = 3600.0


class AnalysisSettings(BaseModel):
    """External transcript analysis service."""

    url: str = ""
    api_key: str = ""
    timeout: float = 30.0
    qualification_threshold: int = 70


class RealtimeSettings(BaseModel):
    """Live dashboard fan-out configuration."""

    heartbeat_interval_seconds: float = 30.0
    subscriber_queue_size: int = 1000


class Settings(BaseSettings):
    """Application settings.

    Loaded from:
    1. Environment variables (DIALER_*)
    2. configs/{environment}.yaml
    3. configs/default.yaml
    """

    model_config = SettingsConfigDict(
        env_prefix="DIALER_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    environment: str = "development"
    debug: bool = True

    log_level: str = "INFO"
    log_json: bool = False

    api_host: str = "0.0.0.0"
    api_port: int = 8080

    jwt_secret_key: str = ""  # MUST be set in production!
    jwt_expiry_minutes: int = 60
    jwt_algorithm: str = "HS256"

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    telephony: TelephonySettings = Field(default_factory=TelephonySettings)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)
    compliance: ComplianceSettings = Field(default_factory=ComplianceSettings)
    jobs: JobSettings = Field(default_factory=JobSettings)
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings object loaded from config files and environment.
    """
    from dynaconf import Dynaconf

    config_dir = Path(os.getenv("DIALER_CONFIG_DIR", "configs"))
    env = os.getenv("DIALER_ENV", "development")

    settings_files = []
    if (config_dir / "default.yaml").exists():
        settings_files.append(str(config_dir / "default.yaml"))
    if (config_dir / f"{env}.yaml").exists():
        settings_files.append(str(config_dir / f"{env}.yaml"))

    dynaconf = Dynaconf(
        envvar_prefix="DIALER",
        settings_files=settings_files,
        load_dotenv=True,
    )

    config_dict: dict[str, Any] = {}
    for key in dynaconf.keys():
        if not key.startswith("_"):
            config_dict[key.lower()] = dynaconf[key]

    config_dict["environment"] = env

    return Settings(**config_dict)


def validate_production_settings(settings: Settings) -> list[str]:
    """Validate settings for production readiness.

    Args:
        settings: Application settings to validate.

    Returns:
        List of validation error messages (empty if all valid).
    """
    errors: list[str] = []

    if settings.environment not in ("production", "staging", "prod"):
        return errors

    if not settings.jwt_secret_key:
        errors.append("DIALER_JWT_SECRET_KEY must be set in production")

    if settings.telephony.validate_signatures and not settings.telephony.webhook_secret:
        errors.append(
            "DIALER_TELEPHONY__WEBHOOK_SECRET must be set when signature validation is enabled"
        )

    if settings.telephony.provider != "mock" and not settings.telephony.api_key:
        errors.append(
            "DIALER_TELEPHONY__API_KEY must be set for the configured telephony provider"
        )

    if settings.debug:
        errors.append("DIALER_DEBUG must be false in production")

    return errors
