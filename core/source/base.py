"""
Source-of-truth interface for catalog search synchronization.

Defines the read-only boundary the workflows consume. Implementations load
every relation the transformer needs (variants, categories with parents,
prices, inventory links) so transformation never performs I/O.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, AsyncGenerator, List, Optional, Sequence, Tuple

from ..indexer.transformer import to_epoch_ms, transform_inventory
from ..storage.schemas import EntityType


class ParentKind(Enum):
    """Sub-entity kinds whose mutations re-index a parent document"""
    VARIANT = "variant"                    # variant -> product id
    INVENTORY_LEVEL = "inventory_level"    # location level -> inventory item id


class SourceStore(ABC):
    """
    Abstract read access to the relational source of truth.

    Record types per entity:
    - products: Product with variants and categories
    - customers: Customer with groups
    - inventory: ProductVariant with its product, prices and inventory links;
      each variant fans out into one document per linked inventory item

    Listing order is created_at descending, then id, so pagination visits
    every record present at the start of a pass exactly once.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name"""
        pass

    @abstractmethod
    async def list_records(
        self,
        entity_type: EntityType,
        take: int,
        skip: int = 0,
        ids: Optional[Sequence[str]] = None
    ) -> List[Any]:
        """
        List one page of records.

        Args:
            entity_type: Entity type to list
            take: Page size
            skip: Records to skip
            ids: Restrict to these document ids; for inventory these are
                inventory item ids and the variants linked to them are returned

        Returns:
            Records with relations loaded
        """
        pass

    @abstractmethod
    async def count_records(self, entity_type: EntityType) -> int:
        """
        Count indexable records.

        For inventory this is the number of distinct inventory items with at
        least one non-orphan variant link, matching the document count a full
        resync produces.
        """
        pass

    @abstractmethod
    async def latest_updated_at(self, entity_type: EntityType) -> Optional[int]:
        """Max updated_at over indexable records as epoch ms, None when empty"""
        pass

    @abstractmethod
    async def resolve_parent_id(self, kind: ParentKind, entity_id: str) -> Optional[str]:
        """Resolve a sub-entity to its parent document id, None when absent"""
        pass

    async def get_record(self, entity_type: EntityType, record_id: str) -> Optional[Any]:
        """Fetch one fresh record by id, None when absent"""
        records = await self.list_records(entity_type, take=1, skip=0, ids=[record_id])
        return records[0] if records else None

    async def list_inventory_variants(self, inventory_item_id: str) -> List[Any]:
        """All variants linked to one inventory item"""
        records: List[Any] = []
        skip = 0
        page_size = 100
        while True:
            page = await self.list_records(
                EntityType.INVENTORY, take=page_size, skip=skip, ids=[inventory_item_id]
            )
            records.extend(page)
            if len(page) < page_size:
                return records
            skip += page_size

    async def iter_record_stamps(
        self,
        entity_type: EntityType,
        page_size: int = 1000
    ) -> AsyncGenerator[Tuple[str, Optional[int]], None]:
        """
        Stream (document id, updated_at ms) for every indexable record.

        Used for targeted stale-document repair; inventory yields one entry per
        inventory item.
        """
        skip = 0
        seen = set()
        while True:
            page = await self.list_records(entity_type, take=page_size, skip=skip)
            for record in page:
                if entity_type == EntityType.INVENTORY:
                    for document in transform_inventory(record):
                        if document.id not in seen:
                            seen.add(document.id)
                            yield document.id, document.updated_at
                else:
                    yield record.id, to_epoch_ms(record.updated_at)
            if len(page) < page_size:
                break
            skip += page_size

    async def close(self) -> None:
        """Release backend resources"""
        return None
