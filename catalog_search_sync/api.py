"""
Framework-neutral route handlers.

Each handler returns ``(http_status, body)`` so any web framework can mount
it as ``POST /sync/{entity}`` or ``POST /sync/products/{id}``.
"""

import logging
from typing import Any, Dict, Tuple

from core.exceptions import UnknownEntityError
from core.storage.schemas import EntityType
from core.sync.events import EntityKind, MutationEvent, MutationType
from core.sync.incremental import IncrementalUpsertWorkflow

logger = logging.getLogger(__name__)

Response = Tuple[int, Dict[str, Any]]


async def handle_sync_request(service, entity: str, wait: bool = True) -> Response:
    """
    Reconcile one entity type on demand, e.g. when a search page loads.

    Args:
        service: CatalogSyncService
        entity: Entity type name from the route
        wait: Block until the index confirms any resync writes

    Returns:
        200 with ``{success, status, synced, message}``; 404 for an unknown
        entity; 500 with ``{success, error, message}`` on failure
    """
    try:
        entity_type = EntityType.parse(entity)
    except UnknownEntityError as e:
        return 404, {"success": False, "error": "Unknown entity", "message": str(e)}

    try:
        result = await service.detector.reconcile(entity_type, wait=wait)
    except Exception as e:
        logger.error(f"Sync request for {entity_type.value} failed: {e}")
        return 500, {"success": False, "error": "Sync failed", "message": str(e)}

    return 200, {
        "success": result.success,
        "status": result.status,
        "synced": result.synced,
        "message": result.message,
    }


async def handle_product_sync_request(service, product_id: str, wait: bool = True) -> Response:
    """
    Re-index one product right away, e.g. after an edit in the admin.

    Returns:
        200 with the written document ids; 404 when the product does not exist
        in the source; 500 on failure
    """
    workflow = IncrementalUpsertWorkflow(
        service.index,
        service.source,
        category_depth=service.incremental.category_depth,
        wait=wait
    )
    event = MutationEvent.create(EntityKind.PRODUCT, MutationType.UPDATED, product_id)
    try:
        result = await workflow.handle(event)
    except Exception as e:
        logger.error(f"Product sync for {product_id} failed: {e}")
        return 500, {"success": False, "error": "Sync failed", "message": str(e)}

    if result.action == "skipped":
        return 404, {"success": False, "message": "Product not found"}

    return 200, {
        "success": True,
        "product_id": product_id,
        "document_ids": result.document_ids,
        "message": f"Product {product_id} synced",
    }
