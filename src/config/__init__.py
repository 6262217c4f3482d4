"""
Configuration package for the effective delta feed.

This package provides configuration management with support for YAML/JSON files,
.env files, environment variable overrides, and Pydantic-based validation.
"""

from .config_manager import (
    ConfigManager,
    FeedConfig,
    StreamSettings,
    RestSettings,
    PollerSettings,
    DeltaSettings,
    LoggingSettings,
    FeedMode,
    LogLevel,
    load_config,
)

__all__ = [
    'ConfigManager',
    'FeedConfig',
    'StreamSettings',
    'RestSettings',
    'PollerSettings',
    'DeltaSettings',
    'LoggingSettings',
    'FeedMode',
    'LogLevel',
    'load_config',
]
