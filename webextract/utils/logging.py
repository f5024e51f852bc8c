"""
Logging configuration for the web extraction engine.

This module sets up structured logging with both console and file outputs,
including context tracking (query, url, site) and performance metrics.
"""

import asyncio
import functools
import inspect
import json
import logging
import time
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.logging import RichHandler

from webextract.config import get_settings

_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
    }
)


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Extra fields passed via extra= or the context filter
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


_log_context: ContextVar[dict[str, Any]] = ContextVar("webextract_log_context", default={})


class ContextFilter(logging.Filter):
    """
    Add context information to log records.

    Values live in a context variable, so concurrent tasks each see their
    own context.
    """

    @property
    def context(self) -> dict[str, Any]:
        return _log_context.get()

    def set_context(self, **kwargs: Any) -> Token:
        """Set context values. Returns a token for ``reset``."""
        return _log_context.set({**_log_context.get(), **kwargs})

    def reset(self, token: Token) -> None:
        _log_context.reset(token)

    def clear_context(self) -> None:
        """Clear all context values."""
        _log_context.set({})

    def filter(self, record: logging.LogRecord) -> bool:
        """Add context to the log record."""
        for key, value in self.context.items():
            setattr(record, key, value)
        return True


# Global context filter instance
context_filter = ContextFilter()


def setup_logging(
    log_level: Optional[str] = None,
    log_file_path: Optional[Path] = None,
    use_structured_logging: bool = True,
) -> None:
    """
    Configure logging for the application.

    Args:
        log_level: Logging level (defaults to settings)
        log_file_path: Path to log file (defaults to settings)
        use_structured_logging: Use JSON structured logging for files
    """
    settings = get_settings()

    log_level = log_level or settings.log_level
    log_file_path = log_file_path or settings.get_log_file_path()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    # Console handler with Rich formatting
    console_handler = RichHandler(
        console=Console(stderr=True),
        show_time=False,
        show_path=False,
        rich_tracebacks=True,
        tracebacks_show_locals=settings.dev_mode,
    )
    console_handler.setLevel(log_level)
    console_handler.addFilter(context_filter)
    console_handler.setFormatter(logging.Formatter("%(message)s", datefmt="%Y-%m-%d %H:%M:%S"))
    root_logger.addHandler(console_handler)

    if log_file_path:
        file_handler = logging.FileHandler(log_file_path, encoding="utf-8")
        file_handler.setLevel(log_level)
        file_handler.addFilter(context_filter)

        if use_structured_logging:
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                    datefmt="%Y-%m-%d %H:%M:%S",
                )
            )
        root_logger.addHandler(file_handler)

    # Quiet chatty third-party loggers
    for noisy in ("aiohttp", "asyncpg", "openai", "httpx", "httpcore", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured",
        extra={
            "log_level": log_level,
            "log_file": str(log_file_path) if log_file_path else None,
            "structured_logging": use_structured_logging,
        },
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the given name.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


class LogContext:
    """Context manager for temporary logging context."""

    def __init__(self, **kwargs: Any) -> None:
        """Initialize with context values."""
        self.context = kwargs
        self._token: Optional[Token] = None

    def __enter__(self) -> "LogContext":
        """Enter the context and set values."""
        self._token = context_filter.set_context(**self.context)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit the context and restore old values."""
        if self._token is not None:
            context_filter.reset(self._token)
            self._token = None


def log_performance(func):
    """
    Decorator to log function performance.

    Usage:
        @log_performance
        async def ingest(self, root: str) -> IngestResult:
            ...
    """

    @functools.wraps(func)
    async def async_wrapper(*args, **kwargs):
        """Async wrapper for performance logging."""
        logger = get_logger(func.__module__)
        start_time = time.time()

        try:
            with LogContext(function=func.__name__):
                logger.debug(f"Starting {func.__name__}")
                result = await func(*args, **kwargs)
                logger.info(
                    f"Completed {func.__name__}",
                    extra={"duration_seconds": time.time() - start_time},
                )
                return result
        except asyncio.CancelledError:
            logger.info(
                f"Cancelled {func.__name__}",
                extra={"duration_seconds": time.time() - start_time},
            )
            raise
        except Exception as e:
            logger.error(
                f"Failed {func.__name__}",
                extra={"duration_seconds": time.time() - start_time, "error": str(e)},
            )
            raise

    @functools.wraps(func)
    def sync_wrapper(*args, **kwargs):
        """Sync wrapper for performance logging."""
        logger = get_logger(func.__module__)
        start_time = time.time()

        try:
            with LogContext(function=func.__name__):
                logger.debug(f"Starting {func.__name__}")
                result = func(*args, **kwargs)
                logger.info(
                    f"Completed {func.__name__}",
                    extra={"duration_seconds": time.time() - start_time},
                )
                return result
        except Exception as e:
            logger.error(
                f"Failed {func.__name__}",
                extra={"duration_seconds": time.time() - start_time, "error": str(e)},
            )
            raise

    if inspect.iscoroutinefunction(func):
        return async_wrapper
    return sync_wrapper


# Initialize logging on import if not already done
if not logging.getLogger().handlers:
    setup_logging()
