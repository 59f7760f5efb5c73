"""Load and validate dbwarden configuration from a YAML file."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from dbwarden.storage.database import DEFAULT_DB_PATH

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _section(data: dict, key: str) -> dict:
    """Return the mapping stored under *key*, or an empty dict if absent."""
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"Config section '{key}' must be a mapping, got {type(value).__name__}")
    return value


def _validate_range(value: Any, name: str, minimum: int = 1, maximum: int | None = None) -> None:
    """Validate a numeric config value is within bounds."""
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ValueError(f"Config '{name}' must be an integer >= {minimum}, got {value!r}")
    if maximum is not None and value > maximum:
        raise ValueError(f"Config '{name}' must be <= {maximum}, got {value!r}")


_LOG_FORMATS = ("dev", "json")


# ---------------------------------------------------------------------------
# Configuration sections
# ---------------------------------------------------------------------------


@dataclass
class DatabaseConfig:
    path: str = DEFAULT_DB_PATH
    busy_timeout_ms: int = 5000


@dataclass
class RecoveryConfig:
    """Limits applied by the startup recovery pass."""

    task_timeout_hours: int = 24
    max_retry_count: int = 3


@dataclass
class QueueConfig:
    capacity: int = 100


@dataclass
class LoggingConfig:
    format: str = "dev"
    level: str = "INFO"


@dataclass
class AppConfig:
    """Top-level settings loaded from ``config/dbwarden.yaml``."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _apply_env_overrides(config: AppConfig) -> None:
    db_path = os.environ.get("DBWARDEN_DB_PATH")
    if db_path:
        config.database.path = db_path
    log_format = os.environ.get("LOG_FORMAT")
    if log_format:
        config.logging.format = log_format
    log_level = os.environ.get("LOG_LEVEL")
    if log_level:
        config.logging.level = log_level


def parse_config(data: dict | None) -> AppConfig:
    """Build an :class:`AppConfig` from already-parsed YAML data.

    Missing sections and keys take their defaults.

    Raises
    ------
    ValueError
        If a section is not a mapping or a value is out of range.
    """
    data = data or {}
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping")

    db_raw = _section(data, "database")
    recovery_raw = _section(data, "recovery")
    queue_raw = _section(data, "queue")
    logging_raw = _section(data, "logging")

    config = AppConfig(
        database=DatabaseConfig(
            path=str(db_raw.get("path", DEFAULT_DB_PATH)),
            busy_timeout_ms=db_raw.get("busy_timeout_ms", 5000),
        ),
        recovery=RecoveryConfig(
            task_timeout_hours=recovery_raw.get("task_timeout_hours", 24),
            max_retry_count=recovery_raw.get("max_retry_count", 3),
        ),
        queue=QueueConfig(capacity=queue_raw.get("capacity", 100)),
        logging=LoggingConfig(
            format=str(logging_raw.get("format", "dev")),
            level=str(logging_raw.get("level", "INFO")),
        ),
    )
    _apply_env_overrides(config)

    _validate_range(config.database.busy_timeout_ms, "database.busy_timeout_ms", minimum=0)
    _validate_range(config.recovery.task_timeout_hours, "recovery.task_timeout_hours")
    _validate_range(config.recovery.max_retry_count, "recovery.max_retry_count")
    _validate_range(config.queue.capacity, "queue.capacity", maximum=100_000)
    if config.logging.format not in _LOG_FORMATS:
        raise ValueError(
            f"Config 'logging.format' must be one of {', '.join(_LOG_FORMATS)}, "
            f"got {config.logging.format!r}"
        )
    return config


def load_config(path: Path) -> AppConfig:
    """Load dbwarden configuration from a YAML file.

    Parameters
    ----------
    path:
        Path to the YAML file (e.g. ``config/dbwarden.yaml``).

    Returns
    -------
    AppConfig
        Parsed configuration with environment overrides applied.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    ValueError
        If a value fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")

    with open(path) as f:
        data = yaml.safe_load(f)

    config = parse_config(data)
    logger.debug("Loaded config from %s (db=%s)", path, config.database.path)
    return config
