# authwatch/config.py
import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError
from .log_ingestor import DEFAULT_LOG_SOURCES

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/etc/authwatch/config.yaml"


@dataclass
class Settings:
    log_sources: List[str] = field(default_factory=lambda: list(DEFAULT_LOG_SOURCES))
    alert_output: str = "-"             # "-" is stdout, anything else a JSONL file
    db_path: Optional[str] = None       # optional SQLite alert store
    retry_delay: float = 0.5
    pid_file: str = "/tmp/authwatch.pid"
    log_level: str = "INFO"
    # Read and validated, but used by downstream consumers only
    alert_threshold: int = 3
    backup_root: str = "/var/log/security_archive"
    api_token: Optional[str] = None


def _check_type(key: str, value: Any, expected) -> None:
    if not isinstance(value, expected) or isinstance(value, bool):
        raise ConfigError(f"config key {key!r} has invalid value {value!r}")


def settings_from_dict(data: Dict[str, Any]) -> Settings:
    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))

    settings = Settings(**{k: v for k, v in data.items() if k in known})

    if isinstance(settings.log_sources, str):
        settings.log_sources = [settings.log_sources]
    if not isinstance(settings.log_sources, list) or not settings.log_sources:
        raise ConfigError("config key 'log_sources' must be a non-empty list of paths")
    for path in settings.log_sources:
        _check_type("log_sources", path, str)

    _check_type("alert_output", settings.alert_output, str)
    _check_type("retry_delay", settings.retry_delay, (int, float))
    _check_type("alert_threshold", settings.alert_threshold, int)
    _check_type("backup_root", settings.backup_root, str)
    _check_type("pid_file", settings.pid_file, str)
    _check_type("log_level", settings.log_level, str)
    for key in ("db_path", "api_token"):
        value = getattr(settings, key)
        if value is not None:
            _check_type(key, value, str)

    if settings.retry_delay < 0:
        raise ConfigError("config key 'retry_delay' must not be negative")
    if settings.alert_threshold < 1:
        raise ConfigError("config key 'alert_threshold' must be at least 1")
    if logging.getLevelName(settings.log_level.upper()) not in (
        logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR, logging.CRITICAL
    ):
        raise ConfigError(f"unknown log_level {settings.log_level!r}")

    return settings


def load_config(path: Optional[str] = None) -> Settings:
    """
    Load settings from a YAML file.

    With no path, DEFAULT_CONFIG_PATH is used if it exists and defaults
    otherwise. An explicit path that does not exist is an error.
    """
    if path is None:
        if not os.path.exists(DEFAULT_CONFIG_PATH):
            return Settings()
        path = DEFAULT_CONFIG_PATH
    elif not os.path.exists(path):
        raise ConfigError(f"config file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e

    # empty file
    if data is None:
        return Settings()
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping")

    return settings_from_dict(data)
