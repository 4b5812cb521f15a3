"""Persistence exception hierarchy."""

from typing import Any, Optional


class PersistError(Exception):
    """Base exception for all persistence errors."""


class DuplicateKeyError(PersistError):
    """A record for the key already exists."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Key already exists: {key}")


class InvalidConversionError(PersistError):
    """Stored payload cannot be decoded as the requested type."""

    def __init__(self, key: str, as_type: Any):
        self.key = key
        self.as_type = as_type
        type_name = getattr(as_type, "__name__", repr(as_type))
        super().__init__(f"Value for key {key} cannot be converted to {type_name}")


class SerializationError(PersistError):
    """Value cannot be serialized for storage."""


class StorageError(PersistError):
    """Failure reported by the underlying database."""


class DatabaseNotConfiguredError(StorageError):
    """No database registered under the requested ID."""

    def __init__(self, database_id: Optional[str]):
        self.database_id = database_id
        super().__init__(f"No database configured with id: {database_id}")


class MigrationNotFoundError(PersistError):
    """A logged migration is no longer registered and cannot be reverted."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Migration not registered: {name}")
