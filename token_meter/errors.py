"""
Exception types shared across the package.
"""


class TokenMeterError(Exception):
    """Base class for all token meter errors."""


class ConfigurationError(TokenMeterError, ValueError):
    """Raised when configuration or a retention policy is malformed."""


class InvalidRecordError(TokenMeterError, ValueError):
    """Raised when a raw usage event cannot be turned into a record.

    Ingestion catches this and reports it per record; it never aborts a batch.
    """


class NotFoundError(TokenMeterError, LookupError):
    """Raised when a requested entity does not exist."""


class StorageBackendError(TokenMeterError):
    """Raised when a storage backend fails to read or write records."""
