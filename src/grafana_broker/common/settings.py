"""Application configuration models shared by services."""

from __future__ import annotations

from typing import Annotated, Optional

from pydantic import Field, HttpUrl, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


GRAFANA_CLOUD_API_BASE = "https://grafana.com/api/v1"


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class BrokerSettings(BaseSettings):
    """Runtime settings for the Grafana Cloud token broker."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    upstream_base_url: HttpUrl = env_field(HttpUrl(GRAFANA_CLOUD_API_BASE), "GRAFANA_BROKER_UPSTREAM_URL")
    upstream_timeout_seconds: float = env_field(10.0, "GRAFANA_BROKER_UPSTREAM_TIMEOUT")
    database_url: str = env_field("sqlite+aiosqlite:///./grafana-broker.db", "GRAFANA_BROKER_DATABASE_URL")
    admin_jwt_secret: SecretStr = env_field(..., "GRAFANA_BROKER_ADMIN_JWT_SECRET")
    admin_jwt_secret_fallbacks: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        validation_alias="GRAFANA_BROKER_ADMIN_JWT_SECRET_FALLBACKS",
    )
    admin_allowed_subjects: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        validation_alias="GRAFANA_BROKER_ADMIN_ALLOWED_SUBJECTS",
    )
    metrics_token: Optional[SecretStr] = env_field(None, "GRAFANA_BROKER_METRICS_TOKEN")
    system_default_ttl_seconds: int = env_field(3600, "GRAFANA_BROKER_DEFAULT_LEASE_TTL")
    system_max_ttl_seconds: int = env_field(768 * 3600, "GRAFANA_BROKER_MAX_LEASE_TTL")
    root_token_ttl_seconds: int = env_field(365 * 24 * 3600, "GRAFANA_BROKER_ROOT_TOKEN_TTL")
    bind_host: str = env_field("127.0.0.1", "GRAFANA_BROKER_BIND_HOST")
    bind_port: int = env_field(8250, "GRAFANA_BROKER_BIND_PORT")
    log_level: str = env_field("INFO", "GRAFANA_BROKER_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "GRAFANA_BROKER_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "GRAFANA_BROKER_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "GRAFANA_BROKER_OTEL_SAMPLER_RATIO")

    @field_validator("admin_jwt_secret_fallbacks", mode="before")
    @classmethod
    def _split_jwt_fallbacks(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("admin_allowed_subjects", mode="before")
    @classmethod
    def _split_admin_subjects(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("system_default_ttl_seconds", "system_max_ttl_seconds", "root_token_ttl_seconds")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("TTL settings must be positive")
        return value

    @property
    def admin_jwt_secrets(self) -> list[str]:
        return [self.admin_jwt_secret.get_secret_value(), *self.admin_jwt_secret_fallbacks]

    @property
    def upstream_url(self) -> str:
        return str(self.upstream_base_url).rstrip("/")
