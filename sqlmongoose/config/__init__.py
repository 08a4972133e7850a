"""
Database configuration management.

This module handles database-specific configuration:
- Connection and pool settings
- YAML loading with environment overrides
- Logging configuration
"""

from .db_config import DatabaseSettings, DEFAULT_CONFIG, load_config, resolve_settings
from .logging_config import setup_db_logging, DatabaseLoggerAdapter, LogLevel

__all__ = [
    'DatabaseSettings',
    'DEFAULT_CONFIG',
    'load_config',
    'resolve_settings',
    'setup_db_logging',
    'DatabaseLoggerAdapter',
    'LogLevel',
]
