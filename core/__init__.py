"""
catalog-search-sync core package

Keeps a denormalized search index consistent with the commerce source of truth.
"""

__version__ = "1.0.0"

from .exceptions import (
    SyncError, TransientSyncError, IndexUnavailableError, IndexTimeoutError,
    SourceUnavailableError, UnknownEntityError, UnsupportedEventError
)
from .storage.schemas import EntityType

__all__ = [
    "SyncError",
    "TransientSyncError",
    "IndexUnavailableError",
    "IndexTimeoutError",
    "SourceUnavailableError",
    "UnknownEntityError",
    "UnsupportedEventError",
    "EntityType"
]
