"""
Search document models.

Flat projections written to the search index. Every field is a primitive or a
flat list of primitives, timestamps are epoch milliseconds, and documents are
always replaced wholesale by id.
"""

from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, Field, ConfigDict


class SearchDocument(BaseModel):
    """Base for all search documents"""
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        extra="forbid"
    )

    id: str
    created_at: int = 0
    updated_at: int = 0

    def to_payload(self) -> Dict[str, Any]:
        """Serialize to the index payload using wire field names"""
        return self.model_dump(by_alias=True)


class ProductDocument(SearchDocument):
    """Product document with flattened SKUs and category hierarchy"""
    title: str = ""
    handle: Optional[str] = None
    description: str = ""
    thumbnail: Optional[str] = None
    status: Optional[str] = None
    variant_sku: List[str] = Field(default_factory=list)
    category_handles: List[str] = Field(default_factory=list)
    metadata_material: Optional[str] = None
    metadata_category: Optional[str] = None


class CustomerDocument(SearchDocument):
    """Customer document with resolved QuickBooks fields"""
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company_name: str = ""
    phone: Optional[str] = None
    has_account: bool = False
    price_level: str = "Retail"
    customer_type: str = "Retail"
    list_id: str = ""
    groups: List[str] = Field(default_factory=list)


class InventoryDocument(SearchDocument):
    """One document per variant/inventory item pair"""
    sku: str = ""
    title: str = "Untitled"
    thumbnail: Optional[str] = None
    total_stock: int = Field(default=0, alias="totalStock")
    total_reserved: int = Field(default=0, alias="totalReserved")
    price: Union[int, float] = 0
    currency_code: str = Field(default="USD", alias="currencyCode")
    variant_id: str = Field(alias="variantId")
    product_id: str = Field(alias="productId")
    category_handles: List[str] = Field(default_factory=list)
    status: str = "draft"
