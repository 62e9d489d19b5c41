"""
Tests for the incremental upsert workflow.

Each test feeds one mutation event and checks the single document write (or
skip) it produces.
"""

import pytest

from core.exceptions import IndexUnavailableError
from core.storage.schemas import EntityType
from core.sync.events import EntityKind, MutationEvent, MutationType
from core.sync.incremental import IncrementalUpsertWorkflow

from tests.fixtures.catalog import FakeSearchIndex, build_catalog, customer, inventory_variant


@pytest.fixture
def source():
    store = build_catalog(products=2, customers=1)
    store.add_inventory_level("ilev_0", "iitem_0")
    store.add_inventory_level("ilev_lost", "iitem_missing")
    return store


@pytest.fixture
def index():
    return FakeSearchIndex()


@pytest.fixture
def workflow(index, source):
    return IncrementalUpsertWorkflow(index, source)


def event(name: str, entity_id: str) -> MutationEvent:
    return MutationEvent.from_name(name, entity_id)


class TestProductEvents:
    """Test product mutations"""

    @pytest.mark.asyncio
    async def test_updated_upserts_document(self, workflow, index):
        result = await workflow.handle(event("product.updated", "prod_1"))

        assert result.success is True
        assert result.action == "upserted"
        assert result.document_ids == ["prod_1"]
        assert index.documents(EntityType.PRODUCTS)["prod_1"]["updated_at"] == 1_700_000_001_000

    @pytest.mark.asyncio
    async def test_created_configures_collection(self, workflow, index):
        assert not await index.collection_exists(EntityType.PRODUCTS)

        await workflow.handle(event("product.created", "prod_0"))

        assert index.configure_calls == [EntityType.PRODUCTS]

    @pytest.mark.asyncio
    async def test_schema_configured_once(self, workflow, index):
        await workflow.handle(event("product.updated", "prod_0"))
        await workflow.handle(event("product.updated", "prod_1"))

        assert index.configure_calls == [EntityType.PRODUCTS]

    @pytest.mark.asyncio
    async def test_deleted_removes_document(self, workflow, index, source):
        await workflow.handle(event("product.created", "prod_1"))
        source.remove_product("prod_1")

        result = await workflow.handle(event("product.deleted", "prod_1"))

        assert result.action == "deleted"
        assert "prod_1" not in index.documents(EntityType.PRODUCTS)

    @pytest.mark.asyncio
    async def test_deleted_but_still_in_source(self, workflow, index):
        result = await workflow.handle(event("product.deleted", "prod_0"))

        assert result.action == "upserted"
        assert "prod_0" in index.documents(EntityType.PRODUCTS)

    @pytest.mark.asyncio
    async def test_missing_product_update_skipped(self, workflow, index):
        result = await workflow.handle(event("product.updated", "prod_unknown"))

        assert result.success is True
        assert result.action == "skipped"
        assert result.reason == "product not found"
        assert index.writes == []

    @pytest.mark.asyncio
    async def test_wait_confirms_write(self, index, source):
        workflow = IncrementalUpsertWorkflow(index, source, wait=True)

        result = await workflow.handle(event("product.updated", "prod_0"))

        assert result.task_handle.is_completed


class TestVariantEvents:
    """Test variant mutations re-indexing their product"""

    @pytest.mark.asyncio
    async def test_variant_update_reindexes_product_with_now(self, workflow, index):
        result = await workflow.handle(event("product-variant.updated", "variant_1"))

        assert result.action == "upserted"
        assert result.document_ids == ["prod_1"]
        # The product's own updated_at is left behind by a variant edit
        assert index.documents(EntityType.PRODUCTS)["prod_1"]["updated_at"] > 1_700_000_001_000

    @pytest.mark.asyncio
    async def test_variant_sku_change_visible(self, workflow, index, source):
        variant = inventory_variant("variant_0", "prod_0", ["iitem_0"])
        variant["sku"] = "SKU-RENAMED"
        source.add_variant(variant)

        await workflow.handle(event("product-variant.updated", "variant_0"))

        assert "SKU-RENAMED" in index.documents(EntityType.PRODUCTS)["prod_0"]["variant_sku"]

    @pytest.mark.asyncio
    async def test_orphan_variant_skipped(self, workflow, index, source):
        source.add_variant(inventory_variant("variant_orphan", "prod_missing", ["iitem_x"]))

        result = await workflow.handle(event("product-variant.created", "variant_orphan"))

        assert result.action == "skipped"
        assert index.writes == []

    @pytest.mark.asyncio
    async def test_deleted_variant_skipped(self, workflow, index, source):
        source.remove_variant("variant_1")

        result = await workflow.handle(event("product-variant.deleted", "variant_1"))

        assert result.action == "skipped"
        assert result.reason == "variant parent not found"


class TestCustomerEvents:
    """Test customer mutations"""

    @pytest.mark.asyncio
    async def test_updated(self, workflow, index, source):
        source.add_customer(customer("cus_0", metadata={"qb_price_level": "Wholesale"}))

        result = await workflow.handle(event("customer.updated", "cus_0"))

        assert result.action == "upserted"
        assert index.documents(EntityType.CUSTOMERS)["cus_0"]["price_level"] == "Wholesale"

    @pytest.mark.asyncio
    async def test_deleted(self, workflow, index, source):
        await workflow.handle(event("customer.created", "cus_0"))
        source.remove_customer("cus_0")

        result = await workflow.handle(event("customer.deleted", "cus_0"))

        assert result.action == "deleted"
        assert index.documents(EntityType.CUSTOMERS) == {}

    @pytest.mark.asyncio
    async def test_missing_update_skipped(self, workflow, index):
        result = await workflow.handle(event("customer.updated", "cus_unknown"))

        assert result.action == "skipped"
        assert result.reason == "customer not found"


class TestInventoryEvents:
    """Test inventory level mutations"""

    @pytest.mark.asyncio
    async def test_level_update_upserts_item(self, workflow, index):
        result = await workflow.handle(event("inventory.inventory-level.updated", "ilev_0"))

        assert result.action == "upserted"
        assert result.document_ids == ["iitem_0"]
        document = index.documents(EntityType.INVENTORY)["iitem_0"]
        assert document["variantId"] == "variant_0"
        assert document["productId"] == "prod_0"
        assert document["totalStock"] == 10

    @pytest.mark.asyncio
    async def test_item_without_links_removed(self, workflow, index):
        index.seed(EntityType.INVENTORY, [{"id": "iitem_missing", "updated_at": 1}])

        result = await workflow.handle(event("inventory.inventory-level.updated", "ilev_lost"))

        assert result.action == "deleted"
        assert "iitem_missing" not in index.documents(EntityType.INVENTORY)

    @pytest.mark.asyncio
    async def test_item_with_only_orphan_links_removed(self, workflow, index, source):
        source.remove_product("prod_0")
        source.add_variant(inventory_variant("variant_0", "prod_0", ["iitem_0"]))

        result = await workflow.handle(event("inventory.inventory-level.updated", "ilev_0"))

        assert result.action == "deleted"

    @pytest.mark.asyncio
    async def test_unknown_level_skipped(self, workflow, index):
        result = await workflow.handle(event("inventory.inventory-level.created", "ilev_unknown"))

        assert result.action == "skipped"
        assert index.writes == []


class TestErrors:
    """Test transient failure propagation"""

    @pytest.mark.asyncio
    async def test_index_failure_propagates(self, workflow, index):
        await index.configure_schema(EntityType.PRODUCTS)
        index.fail_writes(1)

        with pytest.raises(IndexUnavailableError):
            await workflow.handle(event("product.updated", "prod_0"))

    @pytest.mark.asyncio
    async def test_result_dict(self, workflow):
        result = await workflow.handle(
            MutationEvent.create(EntityKind.CUSTOMER, MutationType.UPDATED, "cus_0")
        )
        data = result.to_dict()

        assert data["event"] == "customer.updated"
        assert data["action"] == "upserted"
        assert data["document_ids"] == ["cus_0"]
