"""
Source-of-truth record models.

Read-only projections of the commerce records the search index is built
from. Relations are eagerly loaded by the source store; fields the index
never uses are ignored on parse.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, Field, ConfigDict


Timestamp = Union[datetime, str, int, float, None]


class _Record(BaseModel):
    model_config = ConfigDict(
        extra="ignore",
        frozen=True,
        populate_by_name=True
    )


class Category(_Record):
    """Product category with its parent chain"""
    id: Optional[str] = None
    handle: Optional[str] = None
    name: Optional[str] = None
    parent_category: Optional['Category'] = None

    def handle_chain(self, max_depth: int = 3) -> List[str]:
        """Handles of this category and its ancestors, nearest first"""
        handles = []
        current: Optional[Category] = self
        depth = 0
        while current is not None and depth < max_depth:
            if current.handle:
                handles.append(current.handle)
            current = current.parent_category
            depth += 1
        return handles


class Price(_Record):
    """Money amount in the source's native unit"""
    amount: Union[int, float, None] = None
    currency_code: Optional[str] = None


class InventoryItem(_Record):
    """Stock-keeping record linked to one or more variants"""
    id: str
    sku: Optional[str] = None
    title: Optional[str] = None
    stocked_quantity: Optional[int] = None
    reserved_quantity: Optional[int] = None
    created_at: Timestamp = None
    updated_at: Timestamp = None


class InventoryLink(_Record):
    """Link row between a variant and an inventory item"""
    inventory_item_id: Optional[str] = None
    required_quantity: int = 1
    inventory: Optional[InventoryItem] = None


class ProductVariant(_Record):
    """Purchasable variant of a product"""
    id: str
    sku: Optional[str] = None
    title: Optional[str] = None
    product_id: Optional[str] = None
    product: Optional['Product'] = None
    prices: List[Price] = Field(default_factory=list)
    inventory_items: List[InventoryLink] = Field(default_factory=list)
    created_at: Timestamp = None
    updated_at: Timestamp = None


class Product(_Record):
    """Catalog product with variants and categories"""
    id: str
    title: Optional[str] = None
    handle: Optional[str] = None
    description: Optional[str] = None
    thumbnail: Optional[str] = None
    status: Optional[str] = None
    material: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    variants: List[ProductVariant] = Field(default_factory=list)
    categories: List[Category] = Field(default_factory=list)
    created_at: Timestamp = None
    updated_at: Timestamp = None

    def metadata_value(self, key: str) -> Any:
        return (self.metadata or {}).get(key)


class CustomerGroup(_Record):
    """Customer group membership"""
    id: Optional[str] = None
    name: Optional[str] = None


class Customer(_Record):
    """Customer account with QuickBooks segmentation metadata"""
    id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company_name: Optional[str] = None
    phone: Optional[str] = None
    has_account: bool = False
    metadata: Optional[Dict[str, Any]] = None
    groups: List[CustomerGroup] = Field(default_factory=list)
    created_at: Timestamp = None
    updated_at: Timestamp = None

    def metadata_value(self, key: str) -> Any:
        return (self.metadata or {}).get(key)


Category.model_rebuild()
ProductVariant.model_rebuild()
Product.model_rebuild()
