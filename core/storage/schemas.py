"""
Search index schema definitions for catalog search synchronization.

Declares, per indexed entity type, which document fields are filterable,
sortable and searchable, and how those declarations map to Qdrant payload
indexes.
"""

from enum import Enum
from typing import Dict, List, Optional
from dataclasses import dataclass, field
import logging

from ..exceptions import UnknownEntityError

logger = logging.getLogger(__name__)


class EntityType(Enum):
    """Entity types kept in the search index"""
    PRODUCTS = "products"
    CUSTOMERS = "customers"
    INVENTORY = "inventory"

    @classmethod
    def parse(cls, value) -> 'EntityType':
        """Resolve an entity type from its value, accepting singular names"""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        aliases = {
            "product": cls.PRODUCTS,
            "customer": cls.CUSTOMERS,
            "inventory-item": cls.INVENTORY,
            "inventory_item": cls.INVENTORY,
            "inventory-items": cls.INVENTORY,
        }
        if normalized in aliases:
            return aliases[normalized]
        for member in cls:
            if member.value == normalized:
                return member
        raise UnknownEntityError(f"Unknown entity type: {value}")


@dataclass
class IndexConfig:
    """Configuration for payload field indexing"""
    field_name: str
    field_type: str  # text, keyword, integer, float, bool

    def to_qdrant_schema(self) -> str:
        """Convert to Qdrant payload schema format"""
        schema_type_map = {
            'text': 'text',
            'keyword': 'keyword',
            'integer': 'integer',
            'float': 'float',
            'bool': 'bool'
        }
        return schema_type_map.get(self.field_type, 'keyword')


@dataclass
class IndexSchema:
    """
    Declarative attribute sets for one entity type.

    Qdrant allows a single payload index per field, so a field that appears in
    several sets gets the most specific index: numeric and boolean types win,
    then keyword for filterable/sortable fields, then full-text for fields that
    are only searchable.
    """
    entity_type: EntityType
    filterable: List[str]
    sortable: List[str]
    searchable: List[str]
    field_types: Dict[str, str] = field(default_factory=dict)

    def payload_indexes(self) -> List[IndexConfig]:
        """Resolve the attribute sets into one payload index per field"""
        ordered_fields: List[str] = []
        for name in self.filterable + self.sortable + self.searchable:
            if name not in ordered_fields:
                ordered_fields.append(name)

        indexes = []
        for name in ordered_fields:
            declared = self.field_types.get(name)
            if declared in ('integer', 'float', 'bool'):
                index_type = declared
            elif name in self.filterable or name in self.sortable:
                index_type = 'keyword'
            else:
                index_type = 'text'
            indexes.append(IndexConfig(name, index_type))
        return indexes


@dataclass
class CollectionConfig:
    """Complete collection configuration"""
    name: str
    entity_type: EntityType

    # Performance settings
    replication_factor: int = 1
    write_consistency_factor: int = 1
    on_disk_payload: bool = True

    # Payload schema
    payload_indexes: List[IndexConfig] = None

    def __post_init__(self):
        if self.payload_indexes is None:
            self.payload_indexes = []


# Fields every document carries for drift detection and sweeping
BOOKKEEPING_FIELDS = {
    "id": "keyword",
    "created_at": "integer",
    "updated_at": "integer",
    "indexed_at": "integer",
}


class SearchIndexSchema:
    """Schema definitions for the indexed entity types"""

    @staticmethod
    def get_products_schema() -> IndexSchema:
        """Products: browsed by category tree, searched by title and SKU"""
        return IndexSchema(
            entity_type=EntityType.PRODUCTS,
            filterable=["category_handles", "status", "id", "variant_sku"],
            sortable=["title", "status", "id", "updated_at", "created_at"],
            searchable=["title", "variant_sku", "handle", "description", "metadata_material"],
            field_types=dict(BOOKKEEPING_FIELDS),
        )

    @staticmethod
    def get_customers_schema() -> IndexSchema:
        """Customers: filtered by QuickBooks segmentation metadata"""
        return IndexSchema(
            entity_type=EntityType.CUSTOMERS,
            filterable=["customer_type", "price_level", "has_account", "groups"],
            sortable=["company_name", "created_at", "updated_at", "email"],
            searchable=["company_name", "email", "list_id", "first_name", "last_name", "phone"],
            field_types={**BOOKKEEPING_FIELDS, "has_account": "bool"},
        )

    @staticmethod
    def get_inventory_schema() -> IndexSchema:
        """Inventory: one document per variant/inventory item link"""
        return IndexSchema(
            entity_type=EntityType.INVENTORY,
            filterable=["category_handles", "status", "id", "sku"],
            sortable=["title", "sku", "totalStock", "price", "totalReserved", "updated_at"],
            searchable=["title", "sku"],
            field_types={
                **BOOKKEEPING_FIELDS,
                "totalStock": "integer",
                "totalReserved": "integer",
                "price": "float",
            },
        )

    @staticmethod
    def get_schema(entity_type: EntityType) -> IndexSchema:
        """
        Get index schema by entity type.

        Args:
            entity_type: Indexed entity type

        Returns:
            Declarative attribute sets for the entity
        """
        if entity_type == EntityType.PRODUCTS:
            return SearchIndexSchema.get_products_schema()
        elif entity_type == EntityType.CUSTOMERS:
            return SearchIndexSchema.get_customers_schema()
        elif entity_type == EntityType.INVENTORY:
            return SearchIndexSchema.get_inventory_schema()
        else:
            raise UnknownEntityError(f"Unknown entity type: {entity_type}")

    @staticmethod
    def get_collection_config(
        collection_name: str,
        schema: IndexSchema
    ) -> CollectionConfig:
        """Build a collection configuration carrying the schema's payload indexes"""
        indexes = schema.payload_indexes()
        declared = {index.field_name for index in indexes}
        # Bookkeeping fields are always indexed even when a caller passes a
        # narrower schema, otherwise sorted scrolls on updated_at fail.
        for name, field_type in BOOKKEEPING_FIELDS.items():
            if name not in declared:
                indexes.append(IndexConfig(name, field_type))

        return CollectionConfig(
            name=collection_name,
            entity_type=schema.entity_type,
            payload_indexes=indexes,
        )

    @staticmethod
    def validate_schema(schema: IndexSchema) -> List[str]:
        """
        Validate attribute sets.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        valid_types = {'text', 'keyword', 'integer', 'float', 'bool'}
        for name, field_type in schema.field_types.items():
            if field_type not in valid_types:
                errors.append(f"Invalid field type for {name}: {field_type}")
        for name in schema.filterable + schema.sortable + schema.searchable:
            if not name or '.' in name:
                errors.append(f"Attribute must be a flat top-level field: {name!r}")
        return errors


def collection_name_for(entity_type: EntityType, prefix: Optional[str] = None) -> str:
    """Generate the collection name for an entity type"""
    if not prefix:
        return entity_type.value
    safe_prefix = prefix.lower().replace(' ', '-').replace('_', '-').rstrip('-')
    return f"{safe_prefix}-{entity_type.value}"
