"""
Logging configuration and utilities.

This module provides centralized logging configuration and utilities
for the delivery pipeline. It supports both console and file logging,
plain-text or JSON formatting, and log rotation.
"""

import functools
import json
import logging
import logging.handlers
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from delivery_pipeline.config.settings import LoggingSettings

_RESERVED_RECORD_ATTRS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'getMessage', 'exc_info',
    'exc_text', 'stack_info', 'taskName', 'message', 'asctime',
}


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Fields passed through ``extra={...}`` are copied onto the emitted object.
    """

    def format(self, record):
        """Format log record as JSON."""
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'thread': record.threadName,
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def setup_logging(
    settings: Optional[LoggingSettings] = None,
    level: Optional[str] = None,
    log_file: Optional[Path] = None,
) -> logging.Logger:
    """
    Set up application logging configuration.

    This function configures the root logger with appropriate handlers
    for console and file logging based on the provided settings.

    Args:
        settings: Logging settings. Defaults are used when None.
        level: Logging level overriding the settings value.
        log_file: Path to log file overriding the settings value.

    Returns:
        logging.Logger: The configured root logger.
    """
    settings = settings or LoggingSettings()

    log_level = level or settings.level
    log_file_path = log_file or settings.file_path

    # Convert string level to logging constant
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    if settings.json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(settings.format)

    logger = logging.getLogger()
    logger.setLevel(numeric_level)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file_path:
        log_file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file_path,
            maxBytes=settings.max_file_size,
            backupCount=settings.backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module or component.

    Args:
        name: Name of the logger (typically __name__ for the module).

    Returns:
        logging.Logger: A logger instance for the specified name.
    """
    return logging.getLogger(name)


def log_function_call(logger: logging.Logger, level: int = logging.DEBUG):
    """
    Decorator to log function calls.

    Args:
        logger: Logger instance to use for logging.
        level: Logging level for the messages.

    Returns:
        Callable: The decorator.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            logger.log(level, f"Calling {func.__name__}")
            try:
                result = func(*args, **kwargs)
                logger.log(level, f"{func.__name__} completed successfully")
                return result
            except Exception as e:
                logger.log(level, f"{func.__name__} failed with error: {e}")
                raise
        return wrapper
    return decorator


def log_execution_time(logger: logging.Logger, level: int = logging.DEBUG):
    """
    Decorator to log function execution time.

    Args:
        logger: Logger instance to use for logging.
        level: Logging level for the timing messages.

    Returns:
        Callable: The decorator.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.time()
            try:
                result = func(*args, **kwargs)
                logger.log(level, f"{func.__name__} executed in {time.time() - start_time:.4f} seconds")
                return result
            except Exception as e:
                logger.log(
                    level,
                    f"{func.__name__} failed after {time.time() - start_time:.4f} seconds with error: {e}"
                )
                raise
        return wrapper
    return decorator
