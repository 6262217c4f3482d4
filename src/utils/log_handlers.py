"""
Log handlers for the effective delta feed.

This module provides:
- Colored console output
- Size-based rotating log files
- A separate error log file
"""

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Optional


def _ensure_parent(filename: str) -> None:
    directory = os.path.dirname(filename)
    if directory:
        Path(directory).mkdir(parents=True, exist_ok=True)


class SizeRotatingFileHandler(logging.handlers.RotatingFileHandler):
    """
    Size-based rotating file handler.

    Rotates log files when they reach a specified size, creating the
    log directory if needed.

    Example:
        handler = SizeRotatingFileHandler(
            'logs/feed.log',
            maxBytes=10*1024*1024,  # 10MB
            backupCount=10
        )
    """

    def __init__(
        self,
        filename: str,
        mode: str = 'a',
        maxBytes: int = 10*1024*1024,
        backupCount: int = 10,
        encoding: Optional[str] = 'utf-8',
        delay: bool = False
    ):
        _ensure_parent(filename)
        super().__init__(
            filename=filename,
            mode=mode,
            maxBytes=maxBytes,
            backupCount=backupCount,
            encoding=encoding,
            delay=delay
        )


class ColoredConsoleHandler(logging.StreamHandler):
    """
    Console handler that only keeps colors when writing to a TTY.

    Example:
        handler = ColoredConsoleHandler()
        handler.setFormatter(ColoredFormatter())
        logger.addHandler(handler)
    """

    def __init__(self, stream=None):
        super().__init__(stream)
        self.is_tty = hasattr(self.stream, 'isatty') and self.stream.isatty()

    def setFormatter(self, fmt: Optional[logging.Formatter]) -> None:
        if fmt is not None and hasattr(fmt, 'use_colors') and not self.is_tty:
            fmt.use_colors = False
        super().setFormatter(fmt)


class ErrorFileHandler(logging.FileHandler):
    """
    File handler for ERROR level and above.

    Example:
        handler = ErrorFileHandler('logs/errors.log')
        logger.addHandler(handler)
    """

    def __init__(
        self,
        filename: str,
        mode: str = 'a',
        encoding: Optional[str] = 'utf-8',
        delay: bool = False
    ):
        _ensure_parent(filename)
        super().__init__(filename, mode, encoding, delay)
        self.setLevel(logging.ERROR)
