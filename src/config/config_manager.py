"""
Configuration Manager for the effective delta feed.

This module provides centralized configuration management with support for:
- YAML and JSON configuration files
- .env files and environment variable overrides
- Pydantic-based validation
- Default values for optional parameters
"""

import os
import json
import yaml
from pathlib import Path
from typing import Optional, Union, Dict, Any
from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator
from enum import Enum


class FeedMode(str, Enum):
    """How the host receives live bars."""
    STREAM = "stream"
    POLL = "poll"


class LogLevel(str, Enum):
    """Supported log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class StreamSettings(BaseModel):
    """Streaming feed connection settings."""
    api_key: Optional[str] = Field(default=None, description="Provider API key")
    url: str = Field(
        default="wss://socket.polygon.io/stocks",
        description="WebSocket endpoint"
    )
    max_reconnect_attempts: int = Field(
        default=10, ge=0,
        description="Reconnect attempts before the client gives up"
    )
    base_reconnect_delay: float = Field(
        default=1.0, gt=0,
        description="First reconnect delay in seconds, doubled per attempt"
    )
    connection_timeout: float = Field(
        default=10.0, gt=0,
        description="Seconds to wait for the transport to open"
    )
    price_epsilon: float = Field(
        default=0.001, ge=0,
        description="Minimum trade price change that is reported"
    )

    @field_validator('url')
    @classmethod
    def validate_url(cls, v):
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("url must start with ws:// or wss://")
        return v


class RestSettings(BaseModel):
    """REST data source settings for the polling feed."""
    base_url: str = Field(default="https://api.polygon.io", description="API root")
    api_key: Optional[str] = Field(default=None, description="Provider API key")
    timeout: float = Field(default=10.0, gt=0, description="Request timeout in seconds")


class PollerSettings(BaseModel):
    """Polling fallback feed settings."""
    poll_interval: float = Field(
        default=0.25, gt=0,
        description="Seconds between poll ticks"
    )
    history_count: int = Field(
        default=800, ge=1,
        description="Historical bars loaded before polling"
    )
    max_consecutive_errors: int = Field(
        default=5, ge=1,
        description="Failed ticks before the poller stops itself"
    )
    granularity: str = Field(default="m1", description="Bar granularity")

    @field_validator('granularity')
    @classmethod
    def validate_granularity(cls, v):
        valid = ["m1", "m5", "m15", "m30", "h1", "d1"]
        if v not in valid:
            raise ValueError(f"granularity must be one of {valid}")
        return v


class DeltaSettings(BaseModel):
    """Effective delta engine parameters."""
    window_seconds: float = Field(default=30.0, gt=0, description="Sample window")
    min_movement: float = Field(
        default=0.05, ge=0,
        description="Minimum underlying move to compute a delta"
    )
    max_delta_jump: float = Field(
        default=0.4, gt=0,
        description="Outlier rejection threshold"
    )
    ewma_alpha: float = Field(
        default=0.3, gt=0, le=1.0,
        description="EWMA smoothing factor"
    )
    history_size: int = Field(default=10, ge=1, description="Smoothed values retained")
    default_delta: float = Field(
        default=0.5, ge=-1.0, le=1.0,
        description="Fallback delta before the first estimate"
    )
    live_threshold_seconds: float = Field(
        default=5.0, gt=0,
        description="Max age of the newest sample for a live signal"
    )


class LoggingSettings(BaseModel):
    """Logging settings."""
    level: LogLevel = Field(default=LogLevel.INFO, description="Root log level")
    console: bool = Field(default=True, description="Log to the console")
    colors: bool = Field(default=True, description="Colored console output")
    file: bool = Field(default=False, description="Log JSON lines to a rotating file")
    directory: str = Field(default="logs", description="Log directory")
    filename: str = Field(default="feed.log", description="Log file name")
    max_bytes: int = Field(default=10 * 1024 * 1024, gt=0, description="Rotation size")
    backup_count: int = Field(default=10, ge=0, description="Rotated files kept")
    error_file: bool = Field(default=False, description="Separate error log")

    def to_logging_config(self) -> Dict[str, Any]:
        """Convert to the dictionary accepted by utils.setup_logging."""
        return {
            'logging': {
                'level': self.level.value,
                'console': self.console,
                'console_config': {'colors': self.colors},
                'file': self.file,
                'file_config': {
                    'directory': self.directory,
                    'filename': self.filename,
                    'max_bytes': self.max_bytes,
                    'backup_count': self.backup_count,
                },
                'error_file': self.error_file,
                'error_file_config': {'directory': self.directory},
            }
        }


class FeedConfig(BaseModel):
    """Complete feed configuration."""
    symbol: str = Field(default="SPY", description="Watched instrument")
    symbol_id: Optional[str] = Field(
        default=None,
        description="Data source identifier for the symbol (defaults to symbol)"
    )
    mode: FeedMode = Field(default=FeedMode.STREAM, description="stream or poll")
    stream: StreamSettings = Field(default_factory=StreamSettings)
    rest: RestSettings = Field(default_factory=RestSettings)
    poller: PollerSettings = Field(default_factory=PollerSettings)
    delta: DeltaSettings = Field(default_factory=DeltaSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator('symbol')
    @classmethod
    def validate_symbol(cls, v):
        v = v.strip().upper()
        if not v:
            raise ValueError("symbol cannot be empty")
        return v


class ConfigManager:
    """
    Configuration manager for the feed.

    Handles loading configuration from YAML/JSON files with support for:
    - .env files (loaded with python-dotenv, never overriding the environment)
    - Environment variable overrides
    - Validation using Pydantic models
    - Saving configuration back to file

    Environment Variables:
        POLYGON_API_KEY: API key for both the stream and the REST source
        FEED_SYMBOL: Override watched symbol
        FEED_MODE: Override feed mode (stream/poll)
        FEED_LOG_LEVEL: Override log level
        FEED_POLL_INTERVAL: Override poll interval in seconds
    """

    # Environment variable mappings
    ENV_MAPPINGS = {
        'POLYGON_API_KEY': [('stream', 'api_key'), ('rest', 'api_key')],
        'FEED_SYMBOL': [(None, 'symbol')],
        'FEED_MODE': [(None, 'mode')],
        'FEED_LOG_LEVEL': [('logging', 'level')],
        'FEED_POLL_INTERVAL': [('poller', 'poll_interval')],
    }

    FLOAT_FIELDS = [
        ('poller', 'poll_interval'),
    ]

    def __init__(self, config_path: Optional[Union[str, Path]] = None, env_file: Optional[Union[str, Path]] = None):
        """
        Initialize the configuration manager.

        Args:
            config_path: Path to configuration file (YAML or JSON)
            env_file: Path to a .env file (searched for when omitted)
        """
        self._config_path: Optional[Path] = Path(config_path) if config_path else None
        self._env_file = env_file
        self._config: Optional[FeedConfig] = None
        self._raw_config: Dict[str, Any] = {}

    def load_config(self, config_path: Optional[Union[str, Path]] = None) -> FeedConfig:
        """
        Load configuration from file and environment.

        Without a configuration path the defaults are used, still subject
        to environment overrides.

        Args:
            config_path: Path to configuration file. If not provided, uses the path
                        specified during initialization.

        Returns:
            FeedConfig: Validated configuration object

        Raises:
            FileNotFoundError: If configuration file does not exist
            ValueError: If configuration format or values are invalid
        """
        if config_path:
            self._config_path = Path(config_path)

        if self._config_path is not None:
            if not self._config_path.exists():
                raise FileNotFoundError(
                    f"Configuration file not found: {self._config_path}"
                )
            self._raw_config = self._load_file(self._config_path)
        else:
            self._raw_config = {}

        env_file = self._env_file or find_dotenv(usecwd=True)
        if env_file:
            load_dotenv(dotenv_path=env_file, override=False)
        self._apply_env_overrides()

        try:
            self._config = FeedConfig(**self._raw_config)
        except ValidationError as e:
            raise ValueError(f"Configuration validation failed: {e}") from e

        return self._config

    def _load_file(self, path: Path) -> Dict[str, Any]:
        """
        Load configuration from file based on extension.

        Raises:
            ValueError: If file format is not supported or malformed
        """
        suffix = path.suffix.lower()

        try:
            with open(path, 'r', encoding='utf-8') as f:
                if suffix in ['.yaml', '.yml']:
                    data = yaml.safe_load(f) or {}
                elif suffix == '.json':
                    data = json.load(f)
                else:
                    raise ValueError(
                        f"Unsupported configuration format: {suffix}. "
                        "Use .yaml, .yml, or .json"
                    )
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML format: {e}") from e
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON format: {e}") from e

        if not isinstance(data, dict):
            raise ValueError("Configuration root must be a mapping")
        return data

    def _apply_env_overrides(self) -> None:
        """
        Apply environment variable overrides to configuration.

        Environment variables take precedence over file configuration.
        """
        for env_var, targets in self.ENV_MAPPINGS.items():
            value = os.getenv(env_var)
            if value is None or value == "":
                continue

            for section, key in targets:
                converted = self._convert_env_value(env_var, value, section, key)
                if section is None:
                    self._raw_config[key] = converted
                    continue
                if not isinstance(self._raw_config.get(section), dict):
                    self._raw_config[section] = {}
                self._raw_config[section][key] = converted

    def _convert_env_value(
        self, env_var: str, value: str, section: Optional[str], key: str
    ) -> Union[str, float]:
        """Convert environment variable string to appropriate type."""
        if (section, key) in self.FLOAT_FIELDS:
            try:
                return float(value)
            except ValueError:
                raise ValueError(
                    f"Environment variable {env_var} must be a number, got: {value}"
                )

        if (section, key) == ('logging', 'level'):
            return value.upper()

        if key == 'mode':
            return value.lower()

        return value

    def save_config(
        self, config_path: Optional[Union[str, Path]] = None, format: str = 'yaml'
    ) -> None:
        """
        Save current configuration to file.

        Args:
            config_path: Path to save configuration. If not provided, uses the
                        path specified during initialization.
            format: Output format ('yaml' or 'json')

        Raises:
            ValueError: If no configuration is loaded or format is invalid
        """
        if not self._config:
            raise ValueError("No configuration loaded to save")

        save_path = Path(config_path) if config_path else self._config_path
        if not save_path:
            raise ValueError("No save path specified")

        save_path.parent.mkdir(parents=True, exist_ok=True)

        config_dict = self._config.model_dump(mode='json')

        with open(save_path, 'w', encoding='utf-8') as f:
            if format.lower() in ['yaml', 'yml']:
                yaml.dump(config_dict, f, default_flow_style=False, sort_keys=False)
            elif format.lower() == 'json':
                json.dump(config_dict, f, indent=2)
            else:
                raise ValueError(f"Unsupported format: {format}. Use 'yaml' or 'json'")

    def get_config(self) -> FeedConfig:
        """
        Get the current configuration.

        Raises:
            ValueError: If no configuration is loaded
        """
        if not self._config:
            raise ValueError("No configuration loaded. Call load_config() first.")
        return self._config

    def get_stream_params(self) -> StreamSettings:
        return self.get_config().stream

    def get_rest_params(self) -> RestSettings:
        return self.get_config().rest

    def get_poller_params(self) -> PollerSettings:
        return self.get_config().poller

    def get_delta_params(self) -> DeltaSettings:
        return self.get_config().delta

    def get_logging_params(self) -> LoggingSettings:
        return self.get_config().logging

    def reload(self) -> FeedConfig:
        """Reload configuration from file."""
        return self.load_config(self._config_path)

    @property
    def is_loaded(self) -> bool:
        """Check if configuration is loaded."""
        return self._config is not None

    @classmethod
    def create_default_config(cls, config_path: Union[str, Path]) -> FeedConfig:
        """
        Create a default configuration file.

        Args:
            config_path: Path where to save the default configuration

        Returns:
            FeedConfig: Default configuration object
        """
        config_path = Path(config_path)
        manager = cls()
        manager._config = FeedConfig()
        manager._config_path = config_path

        format = 'yaml' if config_path.suffix in ['.yaml', '.yml'] else 'json'
        manager.save_config(format=format)

        return manager._config


# Convenience function for quick access
def load_config(config_path: Optional[Union[str, Path]] = None) -> FeedConfig:
    """
    Load configuration from file (or defaults) plus environment overrides.

    Args:
        config_path: Path to configuration file

    Returns:
        FeedConfig: Validated configuration object
    """
    manager = ConfigManager(config_path)
    return manager.load_config()
