"""
Core data models for catalog-search-sync

All Pydantic models for source records, search documents, storage and configuration.
"""

from .records import (
    Category, Price, InventoryItem, InventoryLink, ProductVariant, Product,
    CustomerGroup, Customer
)
from .documents import SearchDocument, ProductDocument, CustomerDocument, InventoryDocument
from .storage import TaskHandle, TaskState, IndexPoint, StorageResult, CollectionInfo
from .config import (
    SearchIndexConfig, SourceConfig, SyncConfig, SchedulerConfig, EngineConfig,
    SyncServiceConfig, GlobalSettings
)

__all__ = [
    # Source records
    "Category",
    "Price",
    "InventoryItem",
    "InventoryLink",
    "ProductVariant",
    "Product",
    "CustomerGroup",
    "Customer",

    # Search documents
    "SearchDocument",
    "ProductDocument",
    "CustomerDocument",
    "InventoryDocument",

    # Storage
    "TaskHandle",
    "TaskState",
    "IndexPoint",
    "StorageResult",
    "CollectionInfo",

    # Configuration
    "SearchIndexConfig",
    "SourceConfig",
    "SyncConfig",
    "SchedulerConfig",
    "EngineConfig",
    "SyncServiceConfig",
    "GlobalSettings"
]
