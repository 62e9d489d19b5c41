"""
In-memory source of truth.

Backs local runs and tests with records loaded from JSON fixtures. Records are
stored normalized (products, variants, customers, inventory levels) and
assembled with their relations on read, the way the relational store joins
them.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from .base import SourceStore, ParentKind
from ..indexer.transformer import to_epoch_ms, transform_inventory
from ..models.records import Customer, Product, ProductVariant
from ..storage.schemas import EntityType

logger = logging.getLogger(__name__)


def _sort_key(record: Any):
    created = to_epoch_ms(record.created_at) or 0
    return (-created, record.id)


class InMemorySourceStore(SourceStore):
    """
    Source store holding records in process memory.

    Products may be given with nested variants; those are split into the
    variant table with their product_id set. Variants whose product_id does not
    resolve stay in the table as orphans.
    """

    def __init__(self):
        self._products: Dict[str, Product] = {}
        self._variants: Dict[str, ProductVariant] = {}
        self._customers: Dict[str, Customer] = {}
        self._inventory_levels: Dict[str, str] = {}
        self.read_count = 0

    @property
    def name(self) -> str:
        return "memory"

    @classmethod
    def from_fixture(cls, path: Union[str, Path]) -> 'InMemorySourceStore':
        """
        Load a fixture file.

        Expected shape::

            {"products": [...], "variants": [...], "customers": [...],
             "inventory_levels": {"<level id>": "<inventory item id>"}}
        """
        fixture_path = Path(path)
        with open(fixture_path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        store = cls()
        for product in data.get("products", []):
            store.add_product(product)
        for variant in data.get("variants", []):
            store.add_variant(variant)
        for customer in data.get("customers", []):
            store.add_customer(customer)
        for level_id, item_id in data.get("inventory_levels", {}).items():
            store.add_inventory_level(level_id, item_id)

        logger.info(
            f"Loaded fixture {fixture_path}: {len(store._products)} products, "
            f"{len(store._variants)} variants, {len(store._customers)} customers"
        )
        return store

    # Mutations

    def add_product(self, product: Union[Product, Dict[str, Any]]) -> Product:
        """Insert or replace a product; nested variants move to the variant table"""
        if not isinstance(product, Product):
            product = Product.model_validate(product)
        for variant in product.variants:
            self.add_variant(variant.model_copy(update={"product_id": product.id, "product": None}))
        stored = product.model_copy(update={"variants": []})
        self._products[product.id] = stored
        return stored

    def add_variant(self, variant: Union[ProductVariant, Dict[str, Any]]) -> ProductVariant:
        """Insert or replace a variant"""
        if not isinstance(variant, ProductVariant):
            variant = ProductVariant.model_validate(variant)
        if variant.product is not None and variant.product_id is None:
            variant = variant.model_copy(update={"product_id": variant.product.id})
        stored = variant.model_copy(update={"product": None})
        self._variants[variant.id] = stored
        return stored

    def add_customer(self, customer: Union[Customer, Dict[str, Any]]) -> Customer:
        """Insert or replace a customer"""
        if not isinstance(customer, Customer):
            customer = Customer.model_validate(customer)
        self._customers[customer.id] = customer
        return customer

    def add_inventory_level(self, level_id: str, inventory_item_id: str) -> None:
        """Register a location level belonging to an inventory item"""
        self._inventory_levels[level_id] = inventory_item_id

    def remove_product(self, product_id: str) -> None:
        """Delete a product together with its variants"""
        self._products.pop(product_id, None)
        for variant_id in [v.id for v in self._variants.values() if v.product_id == product_id]:
            del self._variants[variant_id]

    def remove_variant(self, variant_id: str) -> None:
        self._variants.pop(variant_id, None)

    def remove_customer(self, customer_id: str) -> None:
        self._customers.pop(customer_id, None)

    # Assembly

    def _assemble_product(self, product: Product) -> Product:
        variants = sorted(
            (v for v in self._variants.values() if v.product_id == product.id),
            key=_sort_key
        )
        return product.model_copy(update={"variants": variants})

    def _assemble_variant(self, variant: ProductVariant) -> ProductVariant:
        product = self._products.get(variant.product_id) if variant.product_id else None
        return variant.model_copy(update={"product": product})

    def _all_records(self, entity_type: EntityType) -> List[Any]:
        if entity_type == EntityType.PRODUCTS:
            records = [self._assemble_product(p) for p in self._products.values()]
        elif entity_type == EntityType.CUSTOMERS:
            records = list(self._customers.values())
        else:
            records = [self._assemble_variant(v) for v in self._variants.values()]
        return sorted(records, key=_sort_key)

    # SourceStore interface

    async def list_records(
        self,
        entity_type: EntityType,
        take: int,
        skip: int = 0,
        ids: Optional[Sequence[str]] = None
    ) -> List[Any]:
        """List one page of assembled records"""
        await asyncio.sleep(0)
        self.read_count += 1
        records = self._all_records(entity_type)

        if ids is not None:
            wanted = set(ids)
            if entity_type == EntityType.INVENTORY:
                records = [
                    v for v in records
                    if any(link.inventory is not None and link.inventory.id in wanted
                           for link in v.inventory_items)
                ]
            else:
                records = [r for r in records if r.id in wanted]

        return records[skip:skip + take]

    def _inventory_documents(self) -> Dict[str, int]:
        """Document id -> updated_at for every non-orphan inventory pair"""
        stamps: Dict[str, int] = {}
        for variant in self._all_records(EntityType.INVENTORY):
            for document in transform_inventory(variant):
                stamps[document.id] = document.updated_at
        return stamps

    async def count_records(self, entity_type: EntityType) -> int:
        await asyncio.sleep(0)
        if entity_type == EntityType.PRODUCTS:
            return len(self._products)
        elif entity_type == EntityType.CUSTOMERS:
            return len(self._customers)
        return len(self._inventory_documents())

    async def latest_updated_at(self, entity_type: EntityType) -> Optional[int]:
        await asyncio.sleep(0)
        if entity_type == EntityType.INVENTORY:
            stamps = list(self._inventory_documents().values())
        elif entity_type == EntityType.PRODUCTS:
            stamps = [to_epoch_ms(p.updated_at) for p in self._products.values()]
        else:
            stamps = [to_epoch_ms(c.updated_at) for c in self._customers.values()]
        stamps = [s for s in stamps if s is not None]
        return max(stamps) if stamps else None

    async def resolve_parent_id(self, kind: ParentKind, entity_id: str) -> Optional[str]:
        await asyncio.sleep(0)
        if kind == ParentKind.VARIANT:
            variant = self._variants.get(entity_id)
            if variant is None or variant.product_id not in self._products:
                return None
            return variant.product_id
        elif kind == ParentKind.INVENTORY_LEVEL:
            return self._inventory_levels.get(entity_id)
        return None
