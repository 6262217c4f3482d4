"""
Logging system for the effective delta feed.

This module provides category-based structured logging on top of the
standard logging package: a colored console, JSON log files with size
rotation, and an optional error log.

Example Usage:
    from utils import get_logger, setup_logging
    from config import load_config

    # Setup logging
    config = load_config('config/config.yaml')
    setup_logging(config.logging)

    # Get logger
    logger = get_logger('feeds.runner')

    # Log a feed event
    logger.log_feed_event(LogCategory.STREAM, {
        'event_type': 'minute_bar',
        'symbol': 'SPY',
        'close': 501.25
    })

    # Log a signal update
    logger.log_signal({'delta': 0.42, 'is_live': True, 'sample_count': 12})
"""

import logging
import sys
import threading
import uuid
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .log_formatter import (
    JsonFormatter,
    ColoredFormatter,
    CategoryFilter,
)
from .log_handlers import (
    SizeRotatingFileHandler,
    ColoredConsoleHandler,
    ErrorFileHandler,
)


class LogCategory(Enum):
    """Log categories for organizing log output."""
    STREAM = "STREAM"
    POLLER = "POLLER"
    SIGNALS = "SIGNALS"
    SYSTEM = "SYSTEM"
    GENERAL = "GENERAL"


class LoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that adds correlation ID and category support.
    """

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})
        self._correlation_id = None

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        if 'extra' not in kwargs:
            kwargs['extra'] = {}

        if self._correlation_id and 'correlation_id' not in kwargs['extra']:
            kwargs['extra']['correlation_id'] = self._correlation_id

        for key, value in self.extra.items():
            if key not in kwargs['extra']:
                kwargs['extra'][key] = value

        return msg, kwargs

    def set_correlation_id(self, correlation_id: str) -> None:
        self._correlation_id = correlation_id

    def clear_correlation_id(self) -> None:
        self._correlation_id = None

    @contextmanager
    def correlation_context(self, correlation_id: Optional[str] = None):
        """
        Context manager for correlation ID scope.

        Args:
            correlation_id: Correlation ID (generates UUID if None)

        Example:
            with logger.correlation_context():
                logger.info("Reconnecting")
                # All logs in this block share the same correlation ID
        """
        old_id = self._correlation_id
        self._correlation_id = correlation_id or str(uuid.uuid4())
        try:
            yield self._correlation_id
        finally:
            self._correlation_id = old_id

    def log_feed_event(
        self,
        category: LogCategory,
        event_data: Dict[str, Any],
        msg: str = "",
        level: int = logging.INFO
    ) -> None:
        """
        Log a feed event (bar, trade, connection change).

        Args:
            category: LogCategory.STREAM or LogCategory.POLLER
            event_data: Event data dictionary
            msg: Optional message
            level: Log level
        """
        if not msg:
            msg = f"{category.value.title()}: {event_data.get('event_type', 'unknown')}"
            symbol = event_data.get('symbol')
            if symbol:
                msg += f" {symbol}"

        self.log(level, msg, extra={
            'category': category.value,
            'feed_data': event_data
        })

    def log_signal(self, signal_data: Dict[str, Any], msg: str = "", level: int = logging.INFO) -> None:
        """
        Log a signal update.

        Args:
            signal_data: Signal data dictionary (e.g. delta engine status)
            msg: Optional message
            level: Log level
        """
        if not msg:
            delta = signal_data.get('delta')
            msg = f"Signal: delta={delta:.4f}" if isinstance(delta, float) else "Signal update"

        self.log(level, msg, extra={
            'category': LogCategory.SIGNALS.value,
            'signal_data': signal_data
        })

    def log_system_event(self, event_data: Dict[str, Any], msg: str = "", level: int = logging.INFO) -> None:
        """
        Log a system event (startup, shutdown).

        Args:
            event_data: System event data dictionary
            msg: Optional message
            level: Log level
        """
        if not msg:
            msg = f"System: {event_data.get('event_type', 'unknown')}"

        self.log(level, msg, extra={
            'category': LogCategory.SYSTEM.value,
            'system_data': event_data
        })


class LoggerManager:
    """
    Manager for the logging system.

    Handles initialization, configuration, and lifecycle of loggers.
    """

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._initialized = True
        self._loggers: Dict[str, LoggerAdapter] = {}
        self._config: Dict[str, Any] = {}
        self._handlers: List[logging.Handler] = []
        self._setup_done = False

    @property
    def is_setup(self) -> bool:
        return self._setup_done

    def setup_logging(self, config: Optional[Any] = None) -> None:
        """
        Setup the logging system with configuration.

        Args:
            config: A LoggingSettings model, or a dictionary with a
                'logging' section
        """
        if self._setup_done:
            return

        if hasattr(config, 'to_logging_config'):
            config = config.to_logging_config()
        self._config = config or {}

        log_config = self._config.get('logging', {})

        root = logging.getLogger()
        root.setLevel(self._get_log_level(log_config.get('level', 'INFO')))

        for handler in list(root.handlers):
            root.removeHandler(handler)

        if log_config.get('console', True):
            self._setup_console_handler(log_config.get('console_config', {}))

        if log_config.get('file', False):
            self._setup_file_handler(log_config.get('file_config', {}))

        if log_config.get('error_file', False):
            self._setup_error_handler(log_config.get('error_file_config', {}))

        self._setup_done = True

        logger = self.get_logger('system')
        logger.log_system_event({
            'event_type': 'logging_initialized',
            'level': log_config.get('level', 'INFO'),
            'console': log_config.get('console', True),
            'file': log_config.get('file', False),
        }, msg="Logging system initialized", level=logging.DEBUG)

    def _get_log_level(self, level: Union[str, int]) -> int:
        if isinstance(level, int):
            return level

        levels = {
            'DEBUG': logging.DEBUG,
            'INFO': logging.INFO,
            'WARNING': logging.WARNING,
            'ERROR': logging.ERROR,
            'CRITICAL': logging.CRITICAL
        }
        return levels.get(str(level).upper(), logging.INFO)

    def _setup_console_handler(self, config: Dict[str, Any]) -> None:
        handler = ColoredConsoleHandler(sys.stdout)
        handler.setLevel(self._get_log_level(config.get('level', 'DEBUG')))
        handler.setFormatter(ColoredFormatter(use_colors=config.get('colors', True)))

        categories = config.get('categories')
        if categories:
            handler.addFilter(CategoryFilter(include_categories=categories))

        logging.getLogger().addHandler(handler)
        self._handlers.append(handler)

    def _setup_file_handler(self, config: Dict[str, Any]) -> None:
        filepath = Path(config.get('directory', 'logs')) / config.get('filename', 'feed.log')

        handler = SizeRotatingFileHandler(
            filename=str(filepath),
            maxBytes=config.get('max_bytes', 10*1024*1024),
            backupCount=config.get('backup_count', 10)
        )
        handler.setLevel(self._get_log_level(config.get('level', 'INFO')))
        handler.setFormatter(JsonFormatter())

        logging.getLogger().addHandler(handler)
        self._handlers.append(handler)

    def _setup_error_handler(self, config: Dict[str, Any]) -> None:
        filepath = Path(config.get('directory', 'logs')) / config.get('filename', 'errors.log')

        handler = ErrorFileHandler(str(filepath))
        handler.setFormatter(JsonFormatter(indent=2))

        logging.getLogger().addHandler(handler)
        self._handlers.append(handler)

    def get_logger(self, name: str) -> LoggerAdapter:
        if name not in self._loggers:
            self._loggers[name] = LoggerAdapter(logging.getLogger(name))
        return self._loggers[name]

    def shutdown(self) -> None:
        """Close and detach every handler installed by setup_logging."""
        root = logging.getLogger()
        for handler in self._handlers:
            root.removeHandler(handler)
            handler.close()

        self._handlers = []
        self._setup_done = False


# Global logger manager instance
_logger_manager = LoggerManager()


def setup_logging(config: Optional[Any] = None) -> None:
    """
    Setup the logging system.

    Args:
        config: LoggingSettings, or a dictionary such as

            {
                'logging': {
                    'level': 'INFO',
                    'console': True,
                    'file': True,
                    'file_config': {'directory': 'logs', 'filename': 'feed.log'}
                }
            }
    """
    _logger_manager.setup_logging(config)


def get_logger(name: str) -> LoggerAdapter:
    """
    Get a logger instance.

    Example:
        logger = get_logger('feeds.runner')
        logger.info("Feed started")
    """
    return _logger_manager.get_logger(name)


def shutdown_logging() -> None:
    """Shutdown the logging system."""
    _logger_manager.shutdown()


@contextmanager
def log_context(correlation_id: Optional[str] = None, **extra):
    """
    Context manager for logging with correlation ID and extra fields.

    Args:
        correlation_id: Correlation ID (generates UUID if None)
        **extra: Extra fields to add to all logs in context

    Example:
        with log_context(session='poll-1') as logger:
            logger.info("Polling started")
    """
    logger = get_logger('context')
    logger.set_correlation_id(correlation_id or str(uuid.uuid4()))

    saved = dict(logger.extra)
    logger.extra.update(extra)

    try:
        yield logger
    finally:
        logger.clear_correlation_id()
        logger.extra.clear()
        logger.extra.update(saved)
