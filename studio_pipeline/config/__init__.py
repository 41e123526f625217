"""Configuration management for the studio ingestion pipeline."""

from .environment import EnvironmentConfig, load_environment_config
from .exceptions import ConfigurationError
from .loader import load_config, parse_app_config
from .models import (
    AdvancedConfig,
    AppConfig,
    EmailSourceConfig,
    FreshnessConfig,
    LogFormat,
    LoggingConfig,
    LogLevel,
    OrchestratorConfig,
    ScheduleConfig,
    ServerConfig,
    ShopifySourceConfig,
    SourcesConfig,
    UnionSourceConfig,
    WatermarkConfig,
)

__all__ = [
    # Loader functions
    "load_config",
    "parse_app_config",
    "load_environment_config",
    # Configuration models
    "AppConfig",
    "SourcesConfig",
    "UnionSourceConfig",
    "ShopifySourceConfig",
    "EmailSourceConfig",
    "WatermarkConfig",
    "OrchestratorConfig",
    "FreshnessConfig",
    "ScheduleConfig",
    "ServerConfig",
    "LoggingConfig",
    "AdvancedConfig",
    "EnvironmentConfig",
    # Enums
    "LogLevel",
    "LogFormat",
    # Exceptions
    "ConfigurationError",
]
