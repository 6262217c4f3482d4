"""
Utilities package for the effective delta feed.

This package provides:
- Category-based structured logging
- Log formatters (JSON, colored, compact)
- Log handlers (rotating files, colored console, error file)

Example Usage:
    from utils import get_logger, setup_logging, LogCategory
    from config import load_config

    config = load_config('config/config.yaml')
    setup_logging(config.logging)

    logger = get_logger('feeds.runner')
    logger.log_feed_event(LogCategory.POLLER, {'event_type': 'minute_bar', 'symbol': 'SPY'})
"""

from .logger import (
    setup_logging,
    get_logger,
    shutdown_logging,
    log_context,

    LoggerAdapter,
    LoggerManager,
    LogCategory,
)

from .log_formatter import (
    JsonFormatter,
    ColoredFormatter,
    CompactFormatter,
    CategoryFilter,
)

from .log_handlers import (
    SizeRotatingFileHandler,
    ColoredConsoleHandler,
    ErrorFileHandler,
)

__all__ = [
    'setup_logging',
    'get_logger',
    'shutdown_logging',
    'log_context',

    'LoggerAdapter',
    'LoggerManager',
    'LogCategory',

    'JsonFormatter',
    'ColoredFormatter',
    'CompactFormatter',
    'CategoryFilter',

    'SizeRotatingFileHandler',
    'ColoredConsoleHandler',
    'ErrorFileHandler',
]
