"""Application configuration for the npmcreds service."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class BackendSettings(BaseSettings):
    """Runtime settings for the credential backend API service."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    database_url: str = env_field("sqlite+aiosqlite:///./npmcreds.db", "NPMCREDS_DATABASE_URL")
    log_level: str = env_field("INFO", "NPMCREDS_LOG_LEVEL")
    registry_timeout_seconds: float = env_field(20.0, "NPMCREDS_REGISTRY_TIMEOUT")
    ca_bundle_path: Optional[Path] = env_field(None, "NPMCREDS_CA_BUNDLE")
    metrics_token: Optional[SecretStr] = env_field(None, "NPMCREDS_METRICS_TOKEN")
    otel_exporter_endpoint: Optional[str] = env_field(None, "NPMCREDS_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "NPMCREDS_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "NPMCREDS_OTEL_SAMPLER_RATIO")

    @field_validator("registry_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("registry timeout must be positive")
        return value

    @field_validator("otel_sampler_ratio")
    @classmethod
    def _clamp_sampler_ratio(cls, value: float) -> float:
        return max(0.0, min(1.0, value))
