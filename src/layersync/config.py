"""Configuration management using Pydantic settings."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables (``LAYERSYNC_*``)."""

    model_config = SettingsConfigDict(
        env_prefix="LAYERSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "layersync"
    debug: bool = False
    log_level: str = "INFO"

    # GeoServer
    geoserver_url: str = "http://localhost:8080"
    geoserver_workspace: str = "Hidalgo"
    wfs_timeout: float = 30.0           # seconds, per request
    availability_timeout: float = 5.0   # GetCapabilities check
    max_features: int = 5000            # default page size for layer loads
    max_features_cap: int = 10000       # hard server-side maximum

    # Layer catalog (JSON). Empty = bundled default catalog.
    catalog_path: Optional[Path] = None

    # Click queries
    click_tolerance_degrees: float = 0.015
    click_query_limit: int = 50
    click_display_limit: int = 15

    # Temporal (time-varying) layer
    temporal_layer: str = ""            # empty = "<workspace>:04_sequias"
    temporal_field: str = "Quincena"
    debounce_seconds: float = 0.3
    rapid_threshold_seconds: float = 0.2
    cache_capacity: int = 10
    unique_values_limit: int = 10000
    unique_values_ttl: float = 300.0    # seconds

    # Retry policy shared by every query site
    retry_max_attempts: int = 3
    retry_backoff_base: float = 1.0
    retry_backoff_max: float = 8.0

    # API server
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def wfs_url(self) -> str:
        return f"{self.geoserver_url.rstrip('/')}/geoserver/{self.geoserver_workspace}/wfs"

    @property
    def temporal_layer_name(self) -> str:
        return self.temporal_layer or f"{self.geoserver_workspace}:04_sequias"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
