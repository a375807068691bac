"""
Configuration management and loading.

Reads storage and retention settings from a YAML file.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..storage.db import DEFAULT_DB_PATH
from ..storage.factory import SUPPORTED_BACKENDS
from ..storage.models import RetentionPolicy

CONFIG_ENV_VAR = "TOKEN_METER_CONFIG"
DEFAULT_RETENTION_DAYS = 90


@dataclass(frozen=True)
class StorageConfig:
    """Storage backend selection and options."""
    backend: str = "sqlite"
    path: str = DEFAULT_DB_PATH
    timezone: str = "local"
    max_reported_errors: int = 100

    def __post_init__(self):
        """Validate backend and limits."""
        if self.backend not in SUPPORTED_BACKENDS:
            raise ValueError(f"'backend' must be one of: {list(SUPPORTED_BACKENDS)}")
        if self.max_reported_errors < 0:
            raise ValueError("max_reported_errors must be >= 0")

    def to_mapping(self) -> Dict[str, Any]:
        """Open key/value form accepted by ``UsageStorage.initialize``."""
        return {
            "backend": self.backend,
            "path": self.path,
            "timezone": self.timezone,
            "max_reported_errors": self.max_reported_errors,
        }


@dataclass(frozen=True)
class MeterConfig:
    """Complete token meter configuration."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    retention: RetentionPolicy = field(
        default_factory=lambda: RetentionPolicy(default_retention_days=DEFAULT_RETENTION_DAYS)
    )


def load_config(path: str) -> MeterConfig:
    """Load and validate configuration from a YAML file.

    Strict validation ensures no silent misconfigurations: a typo in a
    retention key would otherwise delete data on the next sweep.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MeterConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'storage', 'retention'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    storage_data = raw_config.get('storage', {})
    if not isinstance(storage_data, dict):
        raise ValueError("'storage' must be a dictionary")
    storage = _parse_storage_config(storage_data)

    retention_data = raw_config.get('retention')
    if retention_data is None:
        retention = RetentionPolicy(default_retention_days=DEFAULT_RETENTION_DAYS)
    else:
        if not isinstance(retention_data, dict):
            raise ValueError("'retention' must be a dictionary")
        retention = RetentionPolicy.from_dict(retention_data)

    return MeterConfig(storage=storage, retention=retention)


def _parse_storage_config(data: Dict) -> StorageConfig:
    """Parse and validate the storage section.

    Raises:
        ValueError: If configuration is invalid
    """
    allowed_keys = {'backend', 'path', 'timezone', 'max_reported_errors'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown storage keys: {unknown_keys}")

    for key in ('backend', 'path', 'timezone'):
        if key in data and not isinstance(data[key], str):
            raise ValueError(f"'{key}' in storage must be a string")

    max_errors = data.get('max_reported_errors', 100)
    if isinstance(max_errors, bool) or not isinstance(max_errors, int):
        raise ValueError("'max_reported_errors' in storage must be an integer")

    return StorageConfig(
        backend=data.get('backend', 'sqlite').lower(),
        path=data.get('path', DEFAULT_DB_PATH),
        timezone=data.get('timezone', 'local'),
        max_reported_errors=max_errors,
    )


def resolve_config(path: Optional[str] = None) -> MeterConfig:
    """Load the config named explicitly or by ``TOKEN_METER_CONFIG``.

    Without either, the defaults apply.
    """
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if not path:
        return MeterConfig()
    return load_config(path)
