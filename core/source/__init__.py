"""
Source-of-truth access for catalog-search-sync.

Provides the read-only store interface plus fixture-backed and Medusa admin
API implementations.
"""

from .base import SourceStore, ParentKind
from .memory import InMemorySourceStore
from .medusa import MedusaAdminSource


def create_source_store(config) -> SourceStore:
    """Build the configured source store from a SourceConfig"""
    if config.backend == "medusa":
        return MedusaAdminSource.from_config(config)
    if config.fixture_path is not None:
        return InMemorySourceStore.from_fixture(config.fixture_path)
    return InMemorySourceStore()


__all__ = [
    "SourceStore",
    "ParentKind",
    "InMemorySourceStore",
    "MedusaAdminSource",
    "create_source_store"
]
