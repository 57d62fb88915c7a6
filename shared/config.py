"""
Shared configuration management for the VIVK access governance layer.
"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="VIVK_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Counter store
    redis_url: str = Field(default="redis://localhost:6379/0")
    counter_store: str = Field(default="redis", pattern="^(redis|memory)$")
    counter_store_timeout_ms: int = Field(default=200, ge=1)
    governance_timeout_ms: int = Field(default=1000, ge=1)

    # Rate limiting
    rate_limits_file: Optional[str] = Field(default=None)

    # Maintenance mode
    maintenance_mode: bool = Field(default=False)
    maintenance_message: str = Field(
        default="VIVK is currently under maintenance. We'll be back shortly."
    )

    # Origin validation
    allowed_origins: List[str] = Field(default_factory=list)

    # Admin endpoints
    admin_api_key: Optional[str] = Field(default=None)

    # Caller identity forwarded by the auth proxy in front of the gateway
    trusted_user_headers: bool = Field(default=False)

    # Upstream dependencies
    database_url: Optional[str] = Field(default=None)
    ai_provider_url: Optional[str] = Field(default=None)
    upstream_timeout_seconds: float = Field(default=5.0, gt=0)

    # Retry defaults for upstream calls
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay_ms: int = Field(default=1000, ge=0)
    retry_max_delay_ms: int = Field(default=10000, ge=0)
    retry_jitter: bool = Field(default=True)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
