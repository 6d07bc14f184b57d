"""
Logging configuration for the dispatch system.
Provides consistent logging across all modules.
"""
import json
import logging
import sys
import time
import traceback
from functools import wraps
from typing import Any, Callable

# LogRecord attributes that are not caller-supplied `extra=` context
_RECORD_FIELDS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

# Chatty third-party loggers kept at WARNING
QUIET_LOGGERS = ("pymongo", "aiosmtplib", "aiohttp", "asyncio")


def extra_fields(record: logging.LogRecord) -> dict:
    return {k: v for k, v in record.__dict__.items() if k not in _RECORD_FIELDS}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, `extra=` context included, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            '@timestamp': self.formatTime(record, '%Y-%m-%dT%H:%M:%S'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'line': record.lineno,
        }
        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info),
            }
        log_data.update(extra_fields(record))
        return json.dumps(log_data, default=str)


class ContextFormatter(logging.Formatter):
    """Plain text with any `extra=` context appended as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        context = extra_fields(record)
        if context:
            text += " | " + " ".join(f"{k}={v}" for k, v in context.items())
        return text


def setup_logging(level: str = "INFO", log_file: str = None, structured: bool = False):
    """
    Setup logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file path to write logs
        structured: JSON lines instead of text
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if structured:
        formatter = JsonFormatter()
    else:
        formatter = ContextFormatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = []
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(log_level)
        root_logger.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    return root_logger


# =============================================================================
# RETRY DECORATOR
# =============================================================================

def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,),
    on_retry: Callable = None
):
    """
    Decorator that retries a function with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay in seconds
        backoff_factor: Multiplier for delay after each retry
        exceptions: Tuple of exceptions to catch and retry
        on_retry: Optional callback function(attempt, exception, delay)

    Usage:
        @retry_with_backoff(max_retries=5, exceptions=(ServerSelectionTimeoutError,))
        def connect():
            ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            delay = initial_delay
            last_exception = None

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e

                    if attempt == max_retries:
                        break

                    if on_retry:
                        on_retry(attempt + 1, e, delay)

                    time.sleep(delay)
                    delay *= backoff_factor

            raise last_exception

        return wrapper
    return decorator
