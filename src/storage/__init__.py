"""
Storage abstraction layer for RaceSteward.

This package provides a pluggable document store so events, protests,
votes, users and notifications can be persisted to different systems:

- JSON file (default)
- PostgreSQL (for multi-instance deployments)
- Memory (for testing)

Usage:
    from storage import get_storage_backend

    # Get configured backend (based on environment)
    store = get_storage_backend()

    # Conditional writes report whether this caller won
    store.update_protest_if(protest_id, ProtestStatus.PENDING, {"status": ...})
"""

from typing import TYPE_CHECKING

from config import Settings
from storage.base import (
    DocumentStore,
    StorageConnectionError,
    StorageError,
    StorageReadError,
    StorageWriteError,
)
from storage.json_file import JSONFileStorage
from storage.memory import MemoryStorage

# Lazy import for PostgreSQL to avoid requiring psycopg2
if TYPE_CHECKING:
    from storage.postgresql import PostgreSQLStorage

__all__ = [
    "DocumentStore",
    "JSONFileStorage",
    "MemoryStorage",
    "StorageConnectionError",
    "StorageError",
    "StorageReadError",
    "StorageWriteError",
    "get_storage_backend",
]


def get_storage_backend(settings: Settings | None = None) -> DocumentStore:
    """
    Get the configured storage backend.

    Environment variables (read through ``Settings.from_env``):
        STORAGE_BACKEND: Backend type ("json", "postgresql", "memory")
        RACESTEWARD_DATA_FILE: Path for JSON file storage
        DATABASE_URL: PostgreSQL connection URL

    Returns:
        Configured DocumentStore instance
    """
    settings = settings or Settings.from_env()
    backend_type = settings.storage_backend

    if backend_type == "json":
        return JSONFileStorage(settings.data_file)

    elif backend_type == "postgresql" or backend_type == "postgres":
        if not settings.database_url:
            raise StorageError("DATABASE_URL environment variable required for PostgreSQL backend")
        from storage.postgresql import PostgreSQLStorage

        return PostgreSQLStorage(settings.database_url)

    elif backend_type == "memory":
        return MemoryStorage()

    else:
        raise StorageError(f"Unknown storage backend: {backend_type}")
