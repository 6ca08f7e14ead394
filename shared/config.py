"""
Shared configuration management for the property-management access layer.
"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    property_api_url: str = Field(default="http://localhost:5000")
    upstream_timeout_seconds: float = Field(default=10.0)

    # Server response cache
    response_cache_backend: str = Field(default="memory")
    response_cache_ttl: Optional[int] = Field(default=None)
    response_cache_prefixes: List[str] = Field(default_factory=lambda: ["/api/"])
    response_cache_public_paths: List[str] = Field(default_factory=list)

    # Offline worker
    offline_origin: str = Field(default="http://localhost:3000")
    offline_data_dir: str = Field(default=".offline")
    offline_sync_tag: str = Field(default="background-sync")
    offline_sync_prefixes: List[str] = Field(
        default_factory=lambda: ["/api/maintenance", "/api/conversations/"]
    )
    offline_max_replay_attempts: int = Field(default=10)
    offline_cache_max_age_hours: int = Field(default=24)
    offline_static_assets: List[str] = Field(
        default_factory=lambda: ["/", "/index.html", "/manifest.json", "/favicon.ico"]
    )
    offline_skip_waiting_on_install: bool = Field(default=True)


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
