"""
Unit tests for record to search document transformation.

Covers timestamp normalization, category flattening and the product,
customer and inventory document shapes.
"""

import pytest
from datetime import datetime, timezone, timedelta

from core.exceptions import UnknownEntityError
from core.indexer.transformer import (
    to_epoch_ms, flatten_category_handles, transform_product, transform_customer,
    transform_inventory, transform_records
)
from core.models.records import Category, Customer, Product, ProductVariant
from core.storage.schemas import EntityType

from tests.fixtures.catalog import category, customer, inventory_variant, product


def _variant_with_product(variant: dict, product_record: dict) -> ProductVariant:
    return ProductVariant.model_validate({**variant, "product": product_record})


class TestToEpochMs:
    """Test timestamp normalization"""

    def test_none_and_empty(self):
        assert to_epoch_ms(None) is None
        assert to_epoch_ms("") is None

    def test_numbers_pass_through(self):
        assert to_epoch_ms(1_700_000_000_123) == 1_700_000_000_123
        assert to_epoch_ms(1_700_000_000_123.9) == 1_700_000_000_123

    def test_iso_string_with_z(self):
        assert to_epoch_ms("2024-01-01T00:00:00.000Z") == 1_704_067_200_000

    def test_naive_datetime_is_utc(self):
        naive = datetime(2024, 1, 1, 0, 0, 0)
        aware = datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
        assert to_epoch_ms(naive) == to_epoch_ms(aware) == 1_704_067_200_000

    def test_offset_datetime(self):
        value = datetime(2024, 1, 1, 2, 0, 0, tzinfo=timezone(timedelta(hours=2)))
        assert to_epoch_ms(value) == 1_704_067_200_000

    def test_boolean_rejected(self):
        with pytest.raises(TypeError):
            to_epoch_ms(True)


class TestCategoryHandles:
    """Test category hierarchy flattening"""

    def test_parent_chain_included(self):
        sheets = Category.model_validate(category("sheets", parent=category("paper", parent=category("office"))))
        assert flatten_category_handles([sheets]) == ["sheets", "paper", "office"]

    def test_depth_limit(self):
        deep = Category.model_validate(
            category("a", parent=category("b", parent=category("c", parent=category("d"))))
        )
        assert flatten_category_handles([deep]) == ["a", "b", "c"]
        assert flatten_category_handles([deep], max_depth=1) == ["a"]

    def test_shared_ancestors_deduplicated(self):
        paper = category("paper")
        categories = [
            Category.model_validate(category("sheets", parent=paper)),
            Category.model_validate(category("rolls", parent=paper)),
        ]
        assert flatten_category_handles(categories) == ["sheets", "paper", "rolls"]

    def test_missing_handles_skipped(self):
        node = Category.model_validate({"id": "pcat_x", "handle": None, "parent_category": category("paper")})
        assert flatten_category_handles([node]) == ["paper"]


class TestTransformProduct:
    """Test product document shape"""

    def test_basic_fields(self):
        record = Product.model_validate(product(
            "prod_1",
            created=1000,
            updated=2000,
            skus=["A-1", "A-2"],
            categories=[category("sheets", parent=category("paper"))],
            material="cotton",
            metadata={"category": "Stationery"}
        ))

        document = transform_product(record)

        assert document.id == "prod_1"
        assert document.title == "Product prod_1"
        assert document.variant_sku == ["A-1", "A-2"]
        assert document.category_handles == ["sheets", "paper"]
        assert document.metadata_material == "cotton"
        assert document.metadata_category == "Stationery"
        assert document.created_at == 1000
        assert document.updated_at == 2000

    def test_material_from_metadata(self):
        record = Product.model_validate(product("prod_1", metadata={"material": "linen"}))
        assert transform_product(record).metadata_material == "linen"

    def test_missing_optional_fields(self):
        record = Product(id="prod_bare")
        document = transform_product(record)

        assert document.title == ""
        assert document.description == ""
        assert document.variant_sku == []
        assert document.category_handles == []
        assert document.metadata_material is None
        assert document.created_at == 0
        assert document.updated_at == 0

    def test_variants_without_sku_skipped(self):
        record = Product.model_validate({
            "id": "prod_1",
            "variants": [{"id": "v1", "sku": "A"}, {"id": "v2", "sku": None}, {"id": "v3", "sku": ""}]
        })
        assert transform_product(record).variant_sku == ["A"]

    def test_updated_at_override(self):
        record = Product.model_validate(product("prod_1", updated=2000))
        assert transform_product(record, updated_at_override=99_999).updated_at == 99_999

    def test_payload_is_flat(self):
        record = Product.model_validate(product("prod_1", skus=["A"], categories=[category("sheets")]))
        payload = transform_product(record).to_payload()

        for key, value in payload.items():
            assert not isinstance(value, dict), key


class TestTransformCustomer:
    """Test customer document shape"""

    def test_quickbooks_metadata(self):
        record = Customer.model_validate(customer(
            "cus_1",
            metadata={
                "qb_price_level": "Wholesale",
                "qb_customer_type": "Reseller",
                "qb_list_id": "80000001-123"
            },
            company_name="Acme Print",
            groups=[{"id": "cgrp_1", "name": "VIP"}, {"id": "cgrp_2", "name": None}]
        ))

        document = transform_customer(record)

        assert document.price_level == "Wholesale"
        assert document.customer_type == "Reseller"
        assert document.list_id == "80000001-123"
        assert document.company_name == "Acme Print"
        assert document.groups == ["VIP"]

    def test_defaults(self):
        document = transform_customer(Customer(id="cus_1"))

        assert document.price_level == "Retail"
        assert document.customer_type == "Retail"
        assert document.list_id == ""
        assert document.company_name == ""
        assert document.has_account is False

    def test_fallback_metadata_keys(self):
        record = Customer.model_validate(customer(
            "cus_1", metadata={"quickbooks_list_id": "LIST-9", "company_name": "Meta Co"}
        ))
        document = transform_customer(record)

        assert document.list_id == "LIST-9"
        assert document.company_name == "Meta Co"


class TestTransformInventory:
    """Test inventory fan-out and orphan handling"""

    def test_one_document_per_link(self):
        variant = _variant_with_product(
            inventory_variant("variant_1", "prod_1", ["iitem_1", "iitem_2"], stock=7),
            product("prod_1", categories=[category("sheets")])
        )

        documents = transform_inventory(variant)

        assert [d.id for d in documents] == ["iitem_1", "iitem_2"]
        first = documents[0]
        assert first.variant_id == "variant_1"
        assert first.product_id == "prod_1"
        assert first.total_stock == 7
        assert first.total_reserved == 1
        assert first.price == 1299
        assert first.currency_code == "USD"
        assert first.category_handles == ["sheets"]
        assert first.status == "published"

    def test_wire_field_names(self):
        variant = _variant_with_product(
            inventory_variant("variant_1", "prod_1", ["iitem_1"]), product("prod_1")
        )
        payload = transform_inventory(variant)[0].to_payload()

        for key in ("totalStock", "totalReserved", "currencyCode", "variantId", "productId"):
            assert key in payload
        assert "total_stock" not in payload

    def test_price_defaults(self):
        variant = _variant_with_product(
            inventory_variant("variant_1", "prod_1", ["iitem_1"], amount=None), product("prod_1")
        )
        document = transform_inventory(variant)[0]

        assert document.price == 0
        assert document.currency_code == "USD"

    def test_orphan_variant_dropped(self):
        variant = ProductVariant.model_validate(inventory_variant("variant_1", None, ["iitem_1"]))
        assert transform_inventory(variant) == []

    def test_link_without_inventory_skipped(self):
        data = inventory_variant("variant_1", "prod_1", ["iitem_1"])
        data["inventory_items"].append({"inventory_item_id": "iitem_gone", "inventory": None})
        variant = _variant_with_product(data, product("prod_1"))

        assert [d.id for d in transform_inventory(variant)] == ["iitem_1"]


class TestTransformRecords:
    """Test batch transformation"""

    def test_inventory_counts_dropped_links(self):
        good = _variant_with_product(inventory_variant("variant_1", "prod_1", ["iitem_1"]), product("prod_1"))
        orphan = ProductVariant.model_validate(inventory_variant("variant_2", None, ["iitem_2", "iitem_3"]))

        documents, dropped = transform_records(EntityType.INVENTORY, [good, orphan])

        assert [d.id for d in documents] == ["iitem_1"]
        assert dropped == 2

    def test_products_never_drop(self):
        records = [Product.model_validate(product(f"prod_{i}")) for i in range(3)]
        documents, dropped = transform_records(EntityType.PRODUCTS, records)

        assert len(documents) == 3
        assert dropped == 0

    def test_unknown_entity(self):
        with pytest.raises(UnknownEntityError):
            transform_records("orders", [])
