"""
Error Handling & Logging Infrastructure

Exception taxonomy, logging setup, and the retry/handle decorators used by
the API wrappers and triggers.
"""

import logging
import sys
import time
from datetime import datetime
from functools import wraps
from pathlib import Path
from typing import Any, Callable

LOGGER_NAME = "playlog"

_logger = None


def setup_logging(log_dir: Path, log_level: str = "INFO") -> logging.Logger:
    """
    Set up structured logging for the application.

    Args:
        log_dir: Directory for log files
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        Configured logger instance
    """
    global _logger

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Avoid duplicate handlers
    if logger.handlers:
        _logger = logger
        return logger

    formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"playlog_{datetime.now().strftime('%Y%m%d')}.log"
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError:
        # Read-only filesystem on hosted deployments
        pass

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    _logger = logger
    return logger


def get_logger() -> logging.Logger:
    """Get the configured logger instance."""
    global _logger
    if _logger is None:
        _logger = logging.getLogger(LOGGER_NAME)
    return _logger


class PlaylogError(Exception):
    """Base class for errors raised by playlog."""


class ConfigurationError(PlaylogError):
    """Exception for configuration-related errors."""


class RetryableError(PlaylogError):
    """Exception that indicates an operation should be retried."""


class SpotifyAuthError(PlaylogError):
    """Spotify rejected our credentials (401/403). Fatal for the invocation."""


class SpotifyNotFoundError(PlaylogError):
    """A Spotify resource does not exist (404)."""


class SheetsPermissionError(PlaylogError):
    """Service account lacks access to the spreadsheet."""


class SheetsNotFoundError(PlaylogError):
    """Spreadsheet or tab not found."""


class SheetsWriteError(PlaylogError):
    """A write to the spreadsheet failed after retries."""


class StateSaveError(PlaylogError):
    """Persisting the state document failed."""


class RunInProgressError(PlaylogError):
    """Another invocation holds the run lock."""


def handle_errors(
    reraise: bool = False,
    default_return: Any = None,
    log_error: bool = True
):
    """
    Decorator for robust error handling.

    Args:
        reraise: If True, re-raise the exception after logging
        default_return: Value to return on error (if not reraise)
        log_error: If True, log the error
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if log_error:
                    get_logger().error(f"Error in {func.__name__}: {e}", exc_info=True)
                if reraise:
                    raise
                return default_return
        return wrapper
    return decorator


def retry_on_error(
    max_retries: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple = (RetryableError,),
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Decorator to retry a function on error.

    Args:
        max_retries: Maximum number of attempts
        delay: Initial delay between retries (seconds)
        backoff: Multiplier for delay on each retry
        exceptions: Tuple of exceptions to catch and retry
        sleep: Sleep function (swapped out in tests)
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            current_delay = delay
            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    logger = get_logger()
                    if attempt < max_retries - 1:
                        logger.warning(
                            f"{func.__name__} failed (attempt {attempt + 1}/{max_retries}): {e}. "
                            f"Retrying in {current_delay:.1f}s..."
                        )
                        sleep(current_delay)
                        current_delay *= backoff
                    else:
                        logger.error(f"{func.__name__} failed after {max_retries} attempts: {e}")
                        raise
        return wrapper
    return decorator
