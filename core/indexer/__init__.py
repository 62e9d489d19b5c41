"""
Indexing logic for catalog-search-sync.

Key Components:
- transformer: Pure source record to search document projections
- drift.DriftDetector: Count and freshness comparison with resync on drift
- periodic_sanity_task.ReconcileScheduler: Recurring reconciliation

Only the transformer is re-exported here; the drift detector and scheduler
depend on the sync workflows, which themselves import the transformer.
"""

from .transformer import (
    transform_product,
    transform_customer,
    transform_inventory,
    transform_records,
    to_epoch_ms,
    flatten_category_handles,
    MAX_CATEGORY_DEPTH,
)

__all__ = [
    "transform_product",
    "transform_customer",
    "transform_inventory",
    "transform_records",
    "to_epoch_ms",
    "flatten_category_handles",
    "MAX_CATEGORY_DEPTH",
]
