"""
Database configuration settings.

Settings are validated with pydantic and can be loaded from a YAML file.
A handful of environment variables override file values so deployments can
point the same configuration at a different database.
"""

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union
import logging

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .logging_config import LogLevel

logger = logging.getLogger(__name__)

# Defaults used when a setting is absent from the file or mapping
DEFAULT_CONFIG: Dict[str, Any] = {
    'path': ':memory:',
    'pool_size': 5,                    # Maximum number of connections in pool
    'acquire_timeout': 30.0,           # Seconds to wait for a free connection
    'pragmas': {
        'journal_mode': 'WAL',
        'synchronous': 'NORMAL',
        'foreign_keys': 'ON',
        'busy_timeout': 5000,          # Milliseconds to wait on a locked file
    },
    'log_level': 'INFO',
    'log_file': None,
    'slow_query_threshold': 1.0,       # Log queries slower than this (seconds)
}

# Environment variable -> setting name
ENV_MAPPINGS = {
    'SQLMONGOOSE_DB_PATH': 'path',
    'SQLMONGOOSE_POOL_SIZE': 'pool_size',
    'SQLMONGOOSE_ACQUIRE_TIMEOUT': 'acquire_timeout',
    'SQLMONGOOSE_LOG_LEVEL': 'log_level',
}

YAML_SUFFIXES = ('.yml', '.yaml')


class DatabaseSettings(BaseModel):
    """Validated connection, pool and logging settings for one database handle."""

    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    path: str = Field(default=DEFAULT_CONFIG['path'], description="SQLite file path or ':memory:'")
    pool_size: int = Field(
        default=DEFAULT_CONFIG['pool_size'],
        ge=1,
        validation_alias=AliasChoices('pool_size', 'poolSize'),
        description="Maximum number of pooled connections",
    )
    acquire_timeout: float = Field(
        default=DEFAULT_CONFIG['acquire_timeout'],
        gt=0,
        validation_alias=AliasChoices('acquire_timeout', 'timeout'),
        description="Seconds to wait for a connection before PoolTimeoutError",
    )
    pragmas: Dict[str, Union[str, int]] = Field(
        default_factory=lambda: dict(DEFAULT_CONFIG['pragmas'])
    )
    log_level: LogLevel = LogLevel.INFO
    log_file: Optional[str] = None
    slow_query_threshold: float = Field(default=DEFAULT_CONFIG['slow_query_threshold'], ge=0)

    @field_validator('path')
    @classmethod
    def validate_path(cls, v):
        if not v or not v.strip():
            raise ValueError('Database path must not be empty')
        return v

    @field_validator('log_level', mode='before')
    @classmethod
    def normalize_log_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @property
    def is_memory(self) -> bool:
        return self.path == ':memory:'


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """Safely load a YAML mapping."""
    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    # Allow the settings to live under a top-level 'database' section
    return data.get('database', data)


def _apply_env_overrides(values: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(values)
    for env_var, key in ENV_MAPPINGS.items():
        env_value = os.environ.get(env_var)
        if env_value is not None:
            logger.debug(f"Applying env override {env_var} -> {key}")
            merged[key] = env_value
    return merged


def load_config(config_path: Union[str, Path]) -> DatabaseSettings:
    """
    Load settings from a YAML file, then apply environment overrides.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated DatabaseSettings
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    values = _apply_env_overrides(_load_yaml_file(path))
    settings = DatabaseSettings.model_validate(values)
    logger.info(f"Loaded database configuration from {path}")
    return settings


def resolve_settings(path_or_config: Union[str, Path, Mapping[str, Any], DatabaseSettings, None]) -> DatabaseSettings:
    """
    Turn whatever ``connect`` was given into DatabaseSettings.

    Accepts a database path, a YAML config path, a mapping of settings, or
    ready-made settings.
    """
    if isinstance(path_or_config, DatabaseSettings):
        return path_or_config
    if path_or_config is None:
        return DatabaseSettings.model_validate(_apply_env_overrides({}))
    if isinstance(path_or_config, Mapping):
        return DatabaseSettings.model_validate(dict(path_or_config))

    path = str(path_or_config)
    if path.lower().endswith(YAML_SUFFIXES):
        return load_config(path)
    return DatabaseSettings(path=path)
