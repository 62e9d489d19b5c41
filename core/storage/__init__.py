"""
Storage package for catalog-search-sync.

Provides the Qdrant-backed search index writer and per-entity index schemas.
"""

from .client import SearchIndexClient
from .schemas import (
    EntityType, IndexSchema, IndexConfig, CollectionConfig, SearchIndexSchema,
    collection_name_for
)
from .utils import document_id_to_point_id, now_ms

__all__ = [
    "SearchIndexClient",
    "EntityType",
    "IndexSchema",
    "IndexConfig",
    "CollectionConfig",
    "SearchIndexSchema",
    "collection_name_for",
    "document_id_to_point_id",
    "now_ms"
]
