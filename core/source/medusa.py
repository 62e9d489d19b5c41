"""
Medusa v2 admin API source of truth.

Reads products, customers and variant/inventory links over the admin REST API
with a secret API key. Blocking HTTP calls run off the event loop.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

import requests

from .base import SourceStore, ParentKind
from ..exceptions import SourceUnavailableError
from ..indexer.transformer import to_epoch_ms, transform_inventory
from ..models.records import Customer, Product, ProductVariant
from ..storage.schemas import EntityType

logger = logging.getLogger(__name__)

CATEGORY_FIELDS = "*{prefix}categories,*{prefix}categories.parent_category,*{prefix}categories.parent_category.parent_category"

PRODUCT_FIELDS = ",".join([
    "id", "title", "handle", "description", "thumbnail", "status", "material",
    "metadata", "created_at", "updated_at", "*variants",
    CATEGORY_FIELDS.format(prefix=""),
])

VARIANT_FIELDS = ",".join([
    "id", "sku", "title", "product_id", "created_at", "updated_at",
    "*product", CATEGORY_FIELDS.format(prefix="product."),
    "*prices", "*inventory_items", "*inventory_items.inventory",
])

CUSTOMER_FIELDS = ",".join([
    "id", "email", "first_name", "last_name", "company_name", "phone",
    "has_account", "metadata", "created_at", "updated_at", "*groups",
])


class MedusaAdminSource(SourceStore):
    """
    Source store backed by the Medusa admin API.

    Endpoints:
    - products: GET /admin/products
    - customers: GET /admin/customers
    - inventory: GET /admin/product-variants (variants with inventory links)
    - level resolution: GET /admin/inventory-items with location levels
    """

    # id breaks created_at ties so offset pages do not overlap or skip
    LISTING_ORDER = "-created_at,id"

    ENDPOINTS = {
        EntityType.PRODUCTS: ("/admin/products", "products", PRODUCT_FIELDS, Product),
        EntityType.CUSTOMERS: ("/admin/customers", "customers", CUSTOMER_FIELDS, Customer),
        EntityType.INVENTORY: ("/admin/product-variants", "variants", VARIANT_FIELDS, ProductVariant),
    }

    def __init__(
        self,
        base_url: str = "http://localhost:9000",
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        page_size: int = 100,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize Medusa admin source.

        Args:
            base_url: Medusa backend URL
            api_key: Secret admin API key, sent as HTTP basic username
            timeout: Request timeout in seconds
            page_size: Page size for internal scans
            session: Optional preconfigured requests session
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.page_size = page_size
        self.session = session or requests.Session()
        if api_key:
            self.session.auth = (api_key, "")
        self.session.headers.update({"Accept": "application/json"})

        # Location levels never move between inventory items
        self._level_cache: Dict[str, str] = {}

        logger.info(f"Initialized MedusaAdminSource: {self.base_url}")

    @classmethod
    def from_config(cls, config) -> 'MedusaAdminSource':
        """Create source from a SourceConfig"""
        return cls(
            base_url=config.url,
            api_key=config.api_key,
            timeout=config.timeout,
            page_size=config.page_size
        )

    @property
    def name(self) -> str:
        return "medusa"

    def _get_sync(self, path: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        url = f"{self.base_url}{path}"
        start_time = time.time()
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise SourceUnavailableError(f"Timeout after {self.timeout}s: GET {path}") from e
        except requests.exceptions.ConnectionError as e:
            raise SourceUnavailableError(f"Connection error: GET {path}: {e}") from e

        duration_ms = (time.time() - start_time) * 1000
        logger.debug(f"GET {path} -> {response.status_code} in {duration_ms:.1f}ms")

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise SourceUnavailableError(
                f"GET {path} failed with HTTP {response.status_code}: {response.text[:200]}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise SourceUnavailableError(f"GET {path} returned invalid JSON") from e

    async def _get(self, path: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._get_sync, path, params)

    async def _list(
        self,
        entity_type: EntityType,
        take: int,
        skip: int,
        ids: Optional[Sequence[str]] = None,
        order: Optional[str] = None,
        fields: Optional[str] = None
    ) -> Dict[str, Any]:
        path, key, default_fields, _ = self.ENDPOINTS[entity_type]
        params: Dict[str, Any] = {
            "limit": take,
            "offset": skip,
            "order": order or self.LISTING_ORDER,
            "fields": fields or default_fields,
        }
        if ids:
            params["id[]"] = list(ids)
        body = await self._get(path, params)
        if body is None:
            raise SourceUnavailableError(f"Endpoint not found: {path}")
        return body

    async def list_records(
        self,
        entity_type: EntityType,
        take: int,
        skip: int = 0,
        ids: Optional[Sequence[str]] = None
    ) -> List[Any]:
        """List one page of records with relations expanded"""
        _, key, _, model = self.ENDPOINTS[entity_type]

        if entity_type == EntityType.INVENTORY and ids is not None:
            variant_ids = await self._variant_ids_for_items(ids)
            if not variant_ids:
                return []
            body = await self._list(entity_type, take, skip, ids=variant_ids)
        elif ids is not None and not ids:
            return []
        else:
            body = await self._list(entity_type, take, skip, ids=ids)

        return [model.model_validate(raw) for raw in body.get(key, [])]

    async def _variant_ids_for_items(self, item_ids: Sequence[str]) -> List[str]:
        """Variant ids linked to the given inventory items"""
        variant_ids: List[str] = []
        for item_id in item_ids:
            body = await self._get(
                f"/admin/inventory-items/{item_id}",
                {"fields": "id,*variants"}
            )
            if body is None:
                continue
            for variant in body.get("inventory_item", {}).get("variants") or []:
                if variant.get("id") and variant["id"] not in variant_ids:
                    variant_ids.append(variant["id"])
        return variant_ids

    async def _scan_inventory(self):
        """Yield every inventory document id with its updated_at"""
        skip = 0
        while True:
            page = await self.list_records(EntityType.INVENTORY, take=self.page_size, skip=skip)
            for variant in page:
                for document in transform_inventory(variant):
                    yield document.id, document.updated_at
            if len(page) < self.page_size:
                break
            skip += self.page_size

    async def count_records(self, entity_type: EntityType) -> int:
        """Count records; inventory requires a full scan of variant links"""
        if entity_type == EntityType.INVENTORY:
            seen = set()
            async for document_id, _ in self._scan_inventory():
                seen.add(document_id)
            return len(seen)

        body = await self._list(entity_type, take=1, skip=0, fields="id")
        return int(body.get("count", 0))

    async def latest_updated_at(self, entity_type: EntityType) -> Optional[int]:
        """Max updated_at via a single sorted request (scan for inventory)"""
        if entity_type == EntityType.INVENTORY:
            latest: Optional[int] = None
            async for _, updated_at in self._scan_inventory():
                if latest is None or updated_at > latest:
                    latest = updated_at
            return latest

        _, key, _, _ = self.ENDPOINTS[entity_type]
        body = await self._list(
            entity_type, take=1, skip=0, order="-updated_at", fields="id,updated_at"
        )
        records = body.get(key, [])
        if not records:
            return None
        return to_epoch_ms(records[0].get("updated_at"))

    async def resolve_parent_id(self, kind: ParentKind, entity_id: str) -> Optional[str]:
        """Resolve a variant to its product or a location level to its item"""
        if kind == ParentKind.VARIANT:
            body = await self._get(
                "/admin/product-variants",
                {"id[]": [entity_id], "fields": "id,product_id", "limit": 1}
            )
            variants = (body or {}).get("variants", [])
            if not variants:
                return None
            return variants[0].get("product_id")

        if kind == ParentKind.INVENTORY_LEVEL:
            if entity_id in self._level_cache:
                return self._level_cache[entity_id]
            return await self._scan_location_levels(entity_id)

        return None

    async def _scan_location_levels(self, level_id: str) -> Optional[str]:
        """Page inventory items until the level is found, caching what is seen"""
        skip = 0
        while True:
            body = await self._get(
                "/admin/inventory-items",
                {"limit": self.page_size, "offset": skip, "fields": "id,*location_levels"}
            )
            items = (body or {}).get("inventory_items", [])
            for item in items:
                for level in item.get("location_levels") or []:
                    if level.get("id"):
                        self._level_cache[level["id"]] = item["id"]
            if level_id in self._level_cache:
                return self._level_cache[level_id]
            if len(items) < self.page_size:
                return None
            skip += self.page_size

    async def close(self) -> None:
        self.session.close()
