"""
Database logging configuration.

All package loggers live under the ``sqlmongoose`` namespace. Handlers are
only attached when ``setup_db_logging`` is given a log file; otherwise records
propagate to whatever the application configured.
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

LOGGER_NAME = 'sqlmongoose'


class LogLevel(str, Enum):
    """Valid logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class SafeFormatter(logging.Formatter):
    """Formatter that provides a default for the database context field."""

    def format(self, record):
        if not hasattr(record, 'database_context'):
            record.database_context = 'db'
        return super().format(record)


def setup_db_logging(settings) -> logging.Logger:
    """
    Configure the package logger from database settings.

    Args:
        settings: DatabaseSettings (uses ``log_level`` and ``log_file``)

    Returns:
        The configured ``sqlmongoose`` logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    level = settings.log_level.value if isinstance(settings.log_level, LogLevel) else str(settings.log_level)
    logger.setLevel(getattr(logging, level.upper()))

    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        # Replace a handler left by an earlier handle pointing at the same file
        for handler in logger.handlers[:]:
            if isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(log_path):
                logger.removeHandler(handler)
                handler.close()

        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(SafeFormatter(
            '%(asctime)s.%(msecs)03d - [%(database_context)s] - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        logger.addHandler(file_handler)

    return logger


def log_query(logger: logging.Logger, query: str, params: Optional[tuple] = None,
              duration: Optional[float] = None) -> None:
    """Log an executed statement; full detail only at DEBUG."""
    if logger.isEnabledFor(logging.DEBUG):
        message = f"Query: {query}"
        if params:
            message += f" | Params: {params}"
        if duration is not None:
            message += f" | Duration: {duration:.3f}s"
        logger.debug(message)


def log_transaction(logger: logging.Logger, operation: str, success: bool,
                    duration: Optional[float] = None, error: Optional[str] = None) -> None:
    """Log a transaction outcome."""
    if success:
        message = f"Transaction '{operation}' committed"
        if duration is not None:
            message += f" in {duration:.3f}s"
        logger.debug(message)
    else:
        message = f"Transaction '{operation}' rolled back"
        if error:
            message += f": {error}"
        logger.warning(message)


def log_connection_event(logger: logging.Logger, event: str, details: Optional[str] = None) -> None:
    """
    Log connection pool events.

    Args:
        logger: Database logger instance
        event: Event type ('acquired', 'released', 'created', 'closed', 'error')
        details: Additional event details
    """
    if event == 'error':
        logger.error(f"Connection error: {details}")
    elif logger.isEnabledFor(logging.DEBUG):
        message = f"Connection {event}"
        if details:
            message += f": {details}"
        logger.debug(message)


def log_performance_metric(logger: logging.Logger, metric_name: str,
                           value: float, unit: str = '') -> None:
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"Performance metric - {metric_name}: {value:.4f}{unit}")


class DatabaseLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that adds database context to log messages.

    Provides convenience methods for query, transaction, pool and
    performance logging.
    """

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg, kwargs):
        """Add database context to log records."""
        db_path = self.extra.get('db_path', 'unknown')
        if db_path == ':memory:':
            db_name = 'memory'
        elif db_path != 'unknown':
            db_name = Path(db_path).stem
        else:
            db_name = 'unknown'

        kwargs.setdefault('extra', {})
        kwargs['extra']['database_context'] = db_name
        return msg, kwargs

    def query(self, query: str, params: Optional[tuple] = None, duration: Optional[float] = None) -> None:
        log_query(self.logger, query, params, duration)

    def transaction(self, operation: str, success: bool, duration: Optional[float] = None,
                    error: Optional[str] = None) -> None:
        log_transaction(self.logger, operation, success, duration, error)

    def connection_event(self, event: str, details: Optional[str] = None) -> None:
        log_connection_event(self.logger, event, details)

    def performance(self, metric_name: str, value: float, unit: str = '') -> None:
        log_performance_metric(self.logger, metric_name, value, unit)
