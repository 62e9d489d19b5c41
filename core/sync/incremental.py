"""
Incremental upsert workflow.

Pushes the single document affected by one mutation event. The record is
always re-read from the source of truth; the event only carries identity.
Transient failures propagate so the event engine can retry; records that no
longer exist are reported as skips.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .events import MutationEvent, EntityKind
from ..indexer.transformer import (
    transform_product, transform_customer, transform_inventory, MAX_CATEGORY_DEPTH
)
from ..models.storage import TaskHandle
from ..source.base import SourceStore, ParentKind
from ..storage.client import SearchIndexClient
from ..storage.schemas import EntityType
from ..storage.utils import now_ms

logger = logging.getLogger(__name__)


@dataclass
class IncrementalResult:
    """Outcome of processing one mutation event"""
    success: bool
    action: str  # upserted, deleted, skipped
    event_name: str
    entity_id: str
    reason: Optional[str] = None
    document_ids: List[str] = field(default_factory=list)
    task_handle: Optional[TaskHandle] = None

    @classmethod
    def skipped(cls, event: MutationEvent, reason: str) -> 'IncrementalResult':
        return cls(
            success=True,
            action="skipped",
            event_name=event.name,
            entity_id=event.entity_id,
            reason=reason
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "action": self.action,
            "event": self.event_name,
            "entity_id": self.entity_id,
            "reason": self.reason,
            "document_ids": list(self.document_ids)
        }


class IncrementalUpsertWorkflow:
    """
    Single-document sync driven by one mutation event.

    - Variants resolve to their product and re-index it with the current time
      as updated_at, since a variant edit leaves the product's own timestamp
      unchanged
    - Inventory levels resolve to their inventory item; an item without any
      non-orphan variant link has its document removed
    - A missing product or customer is deleted from the index only when the
      event itself is a deletion of that record; otherwise the event is skipped
    """

    def __init__(
        self,
        index_client: SearchIndexClient,
        source: SourceStore,
        category_depth: int = MAX_CATEGORY_DEPTH,
        wait: bool = False
    ):
        """
        Initialize incremental workflow.

        Args:
            index_client: Search index writer
            source: Source-of-truth store
            category_depth: Ancestor levels included in category handles
            wait: Block on every write until the index confirms it
        """
        self.index = index_client
        self.source = source
        self.category_depth = category_depth
        self.wait = wait
        self._configured: Set[EntityType] = set()

    async def _ensure_schema(self, entity_type: EntityType) -> None:
        """Configure the entity's collection once per workflow instance"""
        if entity_type not in self._configured:
            await self.index.configure_schema(entity_type)
            self._configured.add(entity_type)

    async def handle(self, event: MutationEvent) -> IncrementalResult:
        """
        Process one mutation event.

        Args:
            event: Mutation event to apply

        Returns:
            Result describing the index action taken

        Raises:
            TransientSyncError: Source or index unavailable; safe to retry
        """
        logger.info(f"Processing {event}")

        if event.kind == EntityKind.PRODUCT:
            result = await self._sync_product(event, event.entity_id)
        elif event.kind == EntityKind.VARIANT:
            product_id = await self.source.resolve_parent_id(ParentKind.VARIANT, event.entity_id)
            if product_id is None:
                logger.warning(f"Could not resolve product for variant {event.entity_id}, skipping")
                return IncrementalResult.skipped(event, "variant parent not found")
            logger.debug(f"Resolved product {product_id} from variant {event.entity_id}")
            result = await self._sync_product(event, product_id, updated_at_override=now_ms())
        elif event.kind == EntityKind.CUSTOMER:
            result = await self._sync_customer(event)
        elif event.kind == EntityKind.INVENTORY_LEVEL:
            item_id = await self.source.resolve_parent_id(ParentKind.INVENTORY_LEVEL, event.entity_id)
            if item_id is None:
                logger.warning(f"Could not resolve inventory item for level {event.entity_id}, skipping")
                return IncrementalResult.skipped(event, "inventory level parent not found")
            result = await self._sync_inventory_item(event, item_id)
        else:
            raise ValueError(f"Unhandled entity kind: {event.kind}")

        logger.info(f"{event.name} {event.entity_id}: {result.action}"
                    + (f" ({result.reason})" if result.reason else ""))
        return result

    async def _delete(self, event: MutationEvent, entity_type: EntityType, document_id: str) -> IncrementalResult:
        await self._ensure_schema(entity_type)
        handle = await self.index.delete_by_id(entity_type, document_id, wait=self.wait)
        return IncrementalResult(
            success=True,
            action="deleted",
            event_name=event.name,
            entity_id=event.entity_id,
            document_ids=[document_id],
            task_handle=handle
        )

    async def _upsert(self, event: MutationEvent, entity_type: EntityType, documents) -> IncrementalResult:
        await self._ensure_schema(entity_type)
        handle = await self.index.upsert(entity_type, documents, wait=self.wait)
        return IncrementalResult(
            success=True,
            action="upserted",
            event_name=event.name,
            entity_id=event.entity_id,
            document_ids=[d.id for d in documents],
            task_handle=handle
        )

    async def _sync_product(
        self,
        event: MutationEvent,
        product_id: str,
        updated_at_override: Optional[int] = None
    ) -> IncrementalResult:
        product = await self.source.get_record(EntityType.PRODUCTS, product_id)
        if product is None:
            if event.kind == EntityKind.PRODUCT and event.is_deletion:
                return await self._delete(event, EntityType.PRODUCTS, product_id)
            return IncrementalResult.skipped(event, "product not found")

        document = transform_product(product, updated_at_override, self.category_depth)
        return await self._upsert(event, EntityType.PRODUCTS, [document])

    async def _sync_customer(self, event: MutationEvent) -> IncrementalResult:
        customer = await self.source.get_record(EntityType.CUSTOMERS, event.entity_id)
        if customer is None:
            if event.is_deletion:
                return await self._delete(event, EntityType.CUSTOMERS, event.entity_id)
            return IncrementalResult.skipped(event, "customer not found")

        return await self._upsert(event, EntityType.CUSTOMERS, [transform_customer(customer)])

    async def _sync_inventory_item(self, event: MutationEvent, item_id: str) -> IncrementalResult:
        variants = await self.source.list_inventory_variants(item_id)
        documents = [
            document
            for variant in variants
            for document in transform_inventory(variant, self.category_depth)
            if document.id == item_id
        ]

        if not documents:
            # No indexable link left; the item's document must not linger
            return await self._delete(event, EntityType.INVENTORY, item_id)

        # Several variants may share an item; the last pair wins as in a full resync
        return await self._upsert(event, EntityType.INVENTORY, [documents[-1]])
