"""
Log formatters for the effective delta feed.

This module provides:
- JSON format for log files
- Colored console output (colorama)
- Compact single-line output
- Category filtering
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from colorama import Fore, Style, just_fix_windows_console

# Attributes every LogRecord carries; anything else came in through `extra`
STANDARD_ATTRS = frozenset({
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'exc_info', 'exc_text', 'stack_info',
    'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'taskName',
    'message', 'asctime', 'correlation_id', 'category',
})


def extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Extract the fields passed through `extra` from a log record."""
    return {
        key: value for key, value in record.__dict__.items()
        if key not in STANDARD_ATTRS and not key.startswith('_')
    }


class JsonFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Example output:
    {
        "timestamp": "2024-01-27T10:30:00.123456Z",
        "level": "INFO",
        "logger": "feeds.stream_client",
        "message": "Connected",
        "category": "STREAM",
        "data": {...}
    }
    """

    def __init__(
        self,
        include_extra: bool = True,
        indent: Optional[int] = None,
        default_fields: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize JSON formatter.

        Args:
            include_extra: Include extra fields from log record
            indent: JSON indentation (None for compact)
            default_fields: Default fields to include in every log entry
        """
        super().__init__()
        self.include_extra = include_extra
        self.indent = indent
        self.default_fields = default_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        log_data = {
            'timestamp': created.strftime('%Y-%m-%dT%H:%M:%S.%fZ'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        if getattr(record, 'correlation_id', None):
            log_data['correlation_id'] = record.correlation_id

        if getattr(record, 'category', None):
            log_data['category'] = record.category

        log_data['source'] = {
            'file': record.pathname,
            'line': record.lineno,
            'function': record.funcName
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        if self.include_extra:
            data = extra_fields(record)
            if data:
                log_data['data'] = data

        log_data.update(self.default_fields)

        return json.dumps(log_data, indent=self.indent, default=str)


class ColoredFormatter(logging.Formatter):
    """
    Colored console formatter for human-readable logs.

    Level names are colored with colorama; the category is dimmed.
    """

    COLORS = {
        'DEBUG': Fore.CYAN,
        'INFO': Fore.GREEN,
        'WARNING': Fore.YELLOW,
        'ERROR': Fore.RED,
        'CRITICAL': Fore.MAGENTA + Style.BRIGHT,
    }

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
        show_category: bool = True
    ):
        """
        Initialize colored formatter.

        Args:
            fmt: Format string (uses default if None)
            datefmt: Date format string
            use_colors: Enable/disable colors
            show_category: Show log category in output
        """
        if fmt is None:
            if show_category:
                fmt = '%(asctime)s | %(levelname)s | %(category)s | %(name)s | %(message)s'
            else:
                fmt = '%(asctime)s | %(levelname)s | %(name)s | %(message)s'

        super().__init__(fmt, datefmt)
        self.use_colors = use_colors
        self.show_category = show_category

        if use_colors:
            just_fix_windows_console()

    def formatMessage(self, record: logging.LogRecord) -> str:
        if not hasattr(record, 'category'):
            record.category = 'GENERAL'

        if not self.use_colors:
            return super().formatMessage(record)

        # Color a copy of the fields so other handlers see plain values
        levelname, category = record.levelname, record.category
        color = self.COLORS.get(levelname, '')
        record.levelname = f"{color}{levelname:<8}{Style.RESET_ALL}"
        record.category = f"{Style.DIM}{category}{Style.RESET_ALL}"
        try:
            return super().formatMessage(record)
        finally:
            record.levelname, record.category = levelname, category


class CompactFormatter(logging.Formatter):
    """
    Compact formatter for concise log output.

    Suitable for high-volume logging where brevity is preferred.
    """

    def __init__(self, show_category: bool = True):
        if show_category:
            fmt = '%(asctime)s %(levelname)s [%(category)s] %(message)s'
        else:
            fmt = '%(asctime)s %(levelname)s %(message)s'

        super().__init__(fmt, datefmt='%H:%M:%S')
        self.show_category = show_category

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, 'category'):
            record.category = 'GENERAL'
        return super().format(record)


class CategoryFilter(logging.Filter):
    """
    Filter logs by category.

    Records without a category count as GENERAL.
    """

    def __init__(
        self,
        include_categories: Optional[list] = None,
        exclude_categories: Optional[list] = None
    ):
        """
        Initialize category filter.

        Args:
            include_categories: List of categories to include (None = all)
            exclude_categories: List of categories to exclude
        """
        super().__init__()
        self.include_categories = set(include_categories) if include_categories else None
        self.exclude_categories = set(exclude_categories) if exclude_categories else set()

    def filter(self, record: logging.LogRecord) -> bool:
        category = getattr(record, 'category', 'GENERAL')

        if category in self.exclude_categories:
            return False

        if self.include_categories is not None:
            return category in self.include_categories

        return True
