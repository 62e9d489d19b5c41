"""
Record to search document transformation.

Pure functions mapping source-of-truth records to flat search documents. No
I/O happens here; every relation the transformation needs must already be
loaded on the record.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from ..models.records import Category, Customer, Product, ProductVariant
from ..models.documents import (
    SearchDocument, ProductDocument, CustomerDocument, InventoryDocument
)
from ..exceptions import UnknownEntityError
from ..storage.schemas import EntityType

logger = logging.getLogger(__name__)

MAX_CATEGORY_DEPTH = 3
DEFAULT_CURRENCY = "USD"
DEFAULT_PRICE_LEVEL = "Retail"
DEFAULT_CUSTOMER_TYPE = "Retail"


def to_epoch_ms(value: Any) -> Optional[int]:
    """
    Normalize a timestamp to epoch milliseconds.

    Naive datetimes are treated as UTC. Numbers are assumed to already be
    epoch milliseconds.

    Args:
        value: datetime, ISO-8601 string, number or None

    Returns:
        Integer epoch milliseconds, or None for a missing value
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise TypeError(f"Cannot convert boolean to timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        value = datetime.fromisoformat(text)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    raise TypeError(f"Unsupported timestamp type: {type(value).__name__}")


def _ms_or_zero(value: Any) -> int:
    converted = to_epoch_ms(value)
    return converted if converted is not None else 0


def flatten_category_handles(
    categories: Iterable[Category],
    max_depth: int = MAX_CATEGORY_DEPTH
) -> List[str]:
    """Union of each category's handle and its ancestors, first-seen order"""
    handles: List[str] = []
    for category in categories:
        for handle in category.handle_chain(max_depth):
            if handle not in handles:
                handles.append(handle)
    return handles


def transform_product(
    product: Product,
    updated_at_override: Optional[int] = None,
    max_category_depth: int = MAX_CATEGORY_DEPTH
) -> ProductDocument:
    """
    Transform a product into its search document.

    Args:
        product: Product with variants and categories loaded
        updated_at_override: Epoch ms used instead of the product's own
            updated_at; set when a variant change re-indexes its parent
        max_category_depth: Ancestor levels included in category_handles

    Returns:
        Flat product document
    """
    material = product.material or product.metadata_value("material")
    updated_at = (
        updated_at_override if updated_at_override is not None
        else _ms_or_zero(product.updated_at)
    )

    return ProductDocument(
        id=product.id,
        title=product.title or "",
        handle=product.handle,
        description=product.description or "",
        thumbnail=product.thumbnail,
        status=product.status,
        variant_sku=[variant.sku for variant in product.variants if variant.sku],
        category_handles=flatten_category_handles(product.categories, max_category_depth),
        metadata_material=str(material) if material else None,
        metadata_category=_optional_str(product.metadata_value("category")),
        created_at=_ms_or_zero(product.created_at),
        updated_at=updated_at,
    )


def transform_customer(customer: Customer) -> CustomerDocument:
    """Transform a customer into its search document"""
    company_name = customer.company_name or customer.metadata_value("company_name") or ""
    list_id = (
        customer.metadata_value("qb_list_id")
        or customer.metadata_value("quickbooks_list_id")
        or ""
    )

    return CustomerDocument(
        id=customer.id,
        email=customer.email,
        first_name=customer.first_name,
        last_name=customer.last_name,
        company_name=str(company_name),
        phone=customer.phone,
        has_account=bool(customer.has_account),
        price_level=str(customer.metadata_value("qb_price_level") or DEFAULT_PRICE_LEVEL),
        customer_type=str(customer.metadata_value("qb_customer_type") or DEFAULT_CUSTOMER_TYPE),
        list_id=str(list_id),
        groups=[group.name for group in customer.groups if group.name],
        created_at=_ms_or_zero(customer.created_at),
        updated_at=_ms_or_zero(customer.updated_at),
    )


def transform_inventory(
    variant: ProductVariant,
    max_category_depth: int = MAX_CATEGORY_DEPTH
) -> List[InventoryDocument]:
    """
    Transform a variant into one document per linked inventory item.

    Orphans are dropped: a variant without a resolvable product yields no
    documents, and links without an inventory item are skipped.
    """
    product = variant.product
    if product is None or not product.id:
        return []

    price = variant.prices[0] if variant.prices else None
    amount = price.amount if price is not None and price.amount is not None else 0
    currency = (price.currency_code or "").upper() if price is not None else ""
    category_handles = flatten_category_handles(product.categories, max_category_depth)

    documents = []
    for link in variant.inventory_items:
        inventory = link.inventory
        if inventory is None or not inventory.id:
            continue
        documents.append(InventoryDocument(
            id=inventory.id,
            sku=inventory.sku or variant.sku or "",
            title=inventory.title or product.title or "Untitled",
            thumbnail=product.thumbnail,
            total_stock=inventory.stocked_quantity or 0,
            total_reserved=inventory.reserved_quantity or 0,
            price=amount,
            currency_code=currency or DEFAULT_CURRENCY,
            variant_id=variant.id,
            product_id=product.id,
            category_handles=list(category_handles),
            status=product.status or "draft",
            created_at=_ms_or_zero(inventory.created_at),
            updated_at=_ms_or_zero(inventory.updated_at),
        ))
    return documents


def count_inventory_links(variant: ProductVariant) -> int:
    """Number of inventory links on a variant, valid or not"""
    return len(variant.inventory_items)


def transform_records(
    entity_type: EntityType,
    records: Sequence[Any],
    max_category_depth: int = MAX_CATEGORY_DEPTH
) -> Tuple[List[SearchDocument], int]:
    """
    Transform a batch of records of one entity type.

    Inventory records are variants; each fans out into zero or more documents.

    Returns:
        Tuple of (documents, number of dropped orphan links)
    """
    if entity_type == EntityType.PRODUCTS:
        return [transform_product(p, max_category_depth=max_category_depth) for p in records], 0
    elif entity_type == EntityType.CUSTOMERS:
        return [transform_customer(c) for c in records], 0
    elif entity_type == EntityType.INVENTORY:
        documents: List[SearchDocument] = []
        dropped = 0
        for variant in records:
            produced = transform_inventory(variant, max_category_depth)
            # A variant without a product still counts each of its links as dropped
            dropped += max(count_inventory_links(variant) - len(produced), 0)
            documents.extend(produced)
        if dropped:
            logger.debug(f"Dropped {dropped} orphaned inventory links")
        return documents, dropped
    raise UnknownEntityError(f"Unknown entity type: {entity_type}")


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)
