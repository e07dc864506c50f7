"""
Shared configuration management for the Flag Gate service layer.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="FLAGS_",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local", description="Deployment environment (local, staging, production)")
    log_level: str = Field(default="info")

    # Storage
    store_backend: str = Field(default="memory", description="Backing store: memory or postgres")
    postgres_dsn: str = Field(default="postgres://localhost:5432/flags")
    pool_min_size: int = Field(default=2, ge=1)
    pool_max_size: int = Field(default=10, ge=1)
    command_timeout: float = Field(default=30.0, gt=0)

    # Evaluation
    environment: str = Field(default="prod", description="Flag environment used when a request names none")
    store_timeout_seconds: float = Field(default=0.25, gt=0)
    audit_timeout_seconds: float = Field(default=1.0, gt=0)

    # Administration
    admin_role: str = Field(default="admin")
    audit_page_limit: int = Field(default=100, ge=1, le=500)

    # Observability
    enable_tracing: bool = Field(default=False)
    otel_exporter: Optional[str] = Field(default=None)
    enable_console_tracing: bool = Field(default=False)


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
