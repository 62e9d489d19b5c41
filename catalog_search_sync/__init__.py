"""
Catalog Search Sync - keeps a Qdrant search index consistent with a commerce catalog.

Full resyncs, drift-triggered reconciliation and per-event incremental
upserts for products, customers and inventory items.
"""

__version__ = "1.0.0"

from .service import CatalogSyncService
from .api import handle_sync_request, handle_product_sync_request

__all__ = [
    "CatalogSyncService",
    "handle_sync_request",
    "handle_product_sync_request",
    "__version__",
]
