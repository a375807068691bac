"""
Storage backend factory.

Creates and initializes a UsageStorage from configuration
(``config["backend"]``). Supported backends: "memory", "sqlite".
"""

from typing import Any, Mapping, Optional

from ..errors import ConfigurationError
from .base import UsageStorage

SUPPORTED_BACKENDS = ("memory", "sqlite")


def create_storage(config: Optional[Mapping[str, Any]] = None) -> UsageStorage:
    """Build the configured backend and call ``initialize`` on it.

    Raises:
        ConfigurationError: If the backend is unknown or its config invalid
    """
    config = dict(config or {})
    backend = str(config.get("backend", "memory")).lower()

    if backend == "memory":
        from .memory import InMemoryUsageStorage
        storage: UsageStorage = InMemoryUsageStorage()
    elif backend == "sqlite":
        from .sqlite import SqliteUsageStorage
        storage = SqliteUsageStorage()
    else:
        raise ConfigurationError(f"backend must be one of: {list(SUPPORTED_BACKENDS)}")

    storage.initialize(config)
    return storage
