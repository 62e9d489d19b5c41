"""
Tests for the full resync workflow.

Runs against an in-memory source and index to check completeness, sweeping,
orphan handling, lock exclusivity and rebuild mode.
"""

import asyncio
import pytest

from core.exceptions import IndexUnavailableError
from core.models.config import SyncConfig
from core.storage.schemas import EntityType
from core.sync.full_resync import FullResyncWorkflow, ResyncProgress, ResyncState
from core.sync.lock import SyncLockRegistry

from tests.fixtures.catalog import (
    FakeSearchIndex, build_catalog, category, customer, inventory_variant, product
)


@pytest.fixture
def source():
    return build_catalog(products=3, customers=2)


@pytest.fixture
def index():
    return FakeSearchIndex()


@pytest.fixture
def locks():
    return SyncLockRegistry()


@pytest.fixture
def workflow(index, source, locks):
    return FullResyncWorkflow(index, source, locks=locks, batch_size=2, yield_seconds=0)


class TestFullResync:
    """Test resync completeness and aggregates"""

    @pytest.mark.asyncio
    async def test_products_indexed(self, workflow, index):
        result = await workflow.run(EntityType.PRODUCTS)

        assert result.success is True
        assert result.status == "completed"
        assert result.synced == 3
        assert result.batches == 2
        assert result.with_category == 3
        assert set(index.documents(EntityType.PRODUCTS)) == {"prod_0", "prod_1", "prod_2"}

        document = index.documents(EntityType.PRODUCTS)["prod_1"]
        assert document["variant_sku"] == ["SKU-1", "SKU-variant_1"]
        assert document["category_handles"] == ["sheets", "paper"]

    @pytest.mark.asyncio
    async def test_completeness_across_many_pages(self, index, locks):
        source = build_catalog(products=23, customers=0)
        workflow = FullResyncWorkflow(index, source, locks=locks, batch_size=5, yield_seconds=0)

        result = await workflow.run(EntityType.PRODUCTS)

        assert result.synced == 23
        assert result.batches == 5
        assert len(index.documents(EntityType.PRODUCTS)) == 23
        assert workflow.offset_of(EntityType.PRODUCTS) == 23

    @pytest.mark.asyncio
    async def test_exact_multiple_of_batch_size(self, index, locks):
        source = build_catalog(products=4, customers=0)
        workflow = FullResyncWorkflow(index, source, locks=locks, batch_size=2, yield_seconds=0)

        result = await workflow.run(EntityType.PRODUCTS)

        assert result.synced == 4
        assert len(index.documents(EntityType.PRODUCTS)) == 4

    @pytest.mark.asyncio
    async def test_customers_with_company(self, workflow, index):
        result = await workflow.run("customers")

        assert result.synced == 2
        assert result.with_company == 1
        assert result.to_dict()["customers_with_company"] == 1

    @pytest.mark.asyncio
    async def test_inventory_orphans_skipped(self, workflow, index, source):
        source.add_variant(inventory_variant("variant_orphan", "prod_missing", ["iitem_orphan"]))

        result = await workflow.run(EntityType.INVENTORY)

        assert result.synced == 3
        assert result.orphans_skipped == 1
        assert "iitem_orphan" not in index.documents(EntityType.INVENTORY)
        assert result.category_stats == {"sheets": 3, "paper": 3}

        data = result.to_dict()
        assert data["orphans_skipped"] == 1
        assert data["items_with_category"] == 3

    @pytest.mark.asyncio
    async def test_shared_inventory_item_counted_once(self, index, locks):
        source = build_catalog(products=1, customers=0)
        source.add_variant(inventory_variant("variant_extra", "prod_0", ["iitem_0"], stock=99))
        workflow = FullResyncWorkflow(index, source, locks=locks, batch_size=10, yield_seconds=0)

        result = await workflow.run(EntityType.INVENTORY)

        assert result.synced == 1
        assert len(index.documents(EntityType.INVENTORY)) == 1

    @pytest.mark.asyncio
    async def test_empty_source(self, index, locks):
        workflow = FullResyncWorkflow(index, build_catalog(0, 0), locks=locks, yield_seconds=0)

        result = await workflow.run(EntityType.PRODUCTS)

        assert result.success is True
        assert result.synced == 0
        assert result.batches == 0
        assert EntityType.PRODUCTS in index.configure_calls

    @pytest.mark.asyncio
    async def test_schema_configured_every_run(self, workflow, index):
        await workflow.run(EntityType.PRODUCTS)
        await workflow.run(EntityType.PRODUCTS)

        assert index.configure_calls.count(EntityType.PRODUCTS) == 2

    @pytest.mark.asyncio
    async def test_idempotent(self, workflow, index):
        await workflow.run(EntityType.PRODUCTS)
        first = {k: {f: v for f, v in d.items() if f != "indexed_at"}
                 for k, d in index.documents(EntityType.PRODUCTS).items()}

        await workflow.run(EntityType.PRODUCTS)
        second = {k: {f: v for f, v in d.items() if f != "indexed_at"}
                  for k, d in index.documents(EntityType.PRODUCTS).items()}

        assert first == second

    @pytest.mark.asyncio
    async def test_wait_confirms_last_write(self, workflow, index):
        await workflow.run(EntityType.PRODUCTS, wait=True)

        assert len(index.waited) == 1
        assert index.waited[0].operation == "upsert"

    @pytest.mark.asyncio
    async def test_progress_callbacks(self, workflow):
        reports = []
        workflow.add_progress_callback(reports.append)

        await workflow.run(EntityType.PRODUCTS)

        assert [p.synced for p in reports] == [2, 3]
        assert all(isinstance(p, ResyncProgress) for p in reports)

        workflow.remove_progress_callback(reports.append)
        await workflow.run(EntityType.PRODUCTS)
        assert len(reports) == 2

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_abort(self, workflow):
        def broken(progress):
            raise RuntimeError("callback failed")

        workflow.add_progress_callback(broken)
        result = await workflow.run(EntityType.PRODUCTS)

        assert result.success is True

    def test_from_config(self, index, source, locks):
        config = SyncConfig(batch_size=100, yield_ms=5, category_depth=2, sweep_chunk_size=50)
        workflow = FullResyncWorkflow.from_config(index, source, config, locks=locks)

        assert workflow.batch_size == 100
        assert workflow.yield_seconds == 0.005
        assert workflow.category_depth == 2
        assert workflow.sweep_chunk_size == 50


class TestSweep:
    """Test removal of documents without a source record"""

    @pytest.mark.asyncio
    async def test_deleted_record_swept(self, workflow, index, source):
        await workflow.run(EntityType.PRODUCTS)
        index.age(EntityType.PRODUCTS)
        source.remove_product("prod_1")

        result = await workflow.run(EntityType.PRODUCTS)

        assert result.deleted == 1
        assert result.synced == 2
        assert set(index.documents(EntityType.PRODUCTS)) == {"prod_0", "prod_2"}

    @pytest.mark.asyncio
    async def test_leftover_documents_swept(self, workflow, index):
        index.seed(EntityType.CUSTOMERS, [{"id": "cus_gone", "updated_at": 1}])

        result = await workflow.run(EntityType.CUSTOMERS)

        assert result.deleted == 1
        assert "cus_gone" not in index.documents(EntityType.CUSTOMERS)

    @pytest.mark.asyncio
    async def test_concurrent_rewrite_survives_sweep(self, workflow, index):
        # Written after the run started, e.g. by an incremental upsert
        index.seed(EntityType.CUSTOMERS, [{"id": "cus_new", "updated_at": 1}], indexed_at=10 ** 15)

        result = await workflow.run(EntityType.CUSTOMERS)

        assert result.deleted == 0
        assert "cus_new" in index.documents(EntityType.CUSTOMERS)

    @pytest.mark.asyncio
    async def test_sweep_in_chunks(self, index, source, locks):
        workflow = FullResyncWorkflow(
            index, source, locks=locks, batch_size=10, yield_seconds=0, sweep_chunk_size=2
        )
        index.seed(EntityType.PRODUCTS, [{"id": f"stale_{i}", "updated_at": 1} for i in range(5)])

        result = await workflow.run(EntityType.PRODUCTS)

        deletes = [w for w in index.writes if w[0] == "delete"]
        assert result.deleted == 5
        assert [len(w[2]) for w in deletes] == [2, 2, 1]

    @pytest.mark.asyncio
    async def test_deletion_mid_run_keeps_skipped_record(self, workflow, index, source):
        await workflow.run(EntityType.PRODUCTS)
        index.age(EntityType.PRODUCTS)

        # Removing a record from the first page shifts prod_0 out of the second page
        def remove_after_first_batch(progress):
            if progress.batches == 1:
                source.remove_product("prod_2")

        workflow.add_progress_callback(remove_after_first_batch)
        result = await workflow.run(EntityType.PRODUCTS)
        workflow.remove_progress_callback(remove_after_first_batch)

        documents = index.documents(EntityType.PRODUCTS)
        assert "prod_0" in documents
        assert ("upsert", EntityType.PRODUCTS, ["prod_0"]) in index.writes
        assert result.deleted == 0
        assert result.synced == 3

        # prod_2 was written before it disappeared; the next run sweeps it
        index.age(EntityType.PRODUCTS)
        result = await workflow.run(EntityType.PRODUCTS)

        assert set(index.documents(EntityType.PRODUCTS)) == {"prod_0", "prod_1"}
        assert result.deleted == 1

    @pytest.mark.asyncio
    async def test_only_unseen_documents_checked_against_source(self, workflow, index):
        index.seed(EntityType.INVENTORY, [{"id": "iitem_1", "updated_at": 1}])
        index.seed(EntityType.INVENTORY, [{"id": "iitem_gone", "updated_at": 1}])

        original = workflow._live_documents
        calls = []

        async def spy(entity_type, document_ids):
            calls.append(list(document_ids))
            return await original(entity_type, document_ids)

        workflow._live_documents = spy
        result = await workflow.run(EntityType.INVENTORY)

        assert calls == [["iitem_gone"]]
        assert result.deleted == 1
        assert "iitem_1" in index.documents(EntityType.INVENTORY)
        assert "iitem_gone" not in index.documents(EntityType.INVENTORY)

    @pytest.mark.asyncio
    async def test_unseen_live_inventory_item_reindexed(self, index, source, locks):
        workflow = FullResyncWorkflow(index, source, locks=locks, batch_size=10, yield_seconds=0)
        original = source.list_records

        # Hide iitem_1's variant from the paged pass, as a shifted page would
        async def list_without_variant_1(entity_type, take, skip=0, ids=None):
            records = await original(entity_type, take, skip=skip, ids=ids)
            if ids is None:
                return [r for r in records if r.id != "variant_1"]
            return records

        index.seed(EntityType.INVENTORY, [{"id": "iitem_1", "updated_at": 1}])
        source.list_records = list_without_variant_1

        result = await workflow.run(EntityType.INVENTORY)

        document = index.documents(EntityType.INVENTORY)["iitem_1"]
        assert document["variantId"] == "variant_1"
        assert document["productId"] == "prod_1"
        assert result.deleted == 0
        assert result.synced == 3


class TestLockExclusivity:
    """Test single-run-per-entity guarantee"""

    @pytest.mark.asyncio
    async def test_held_lock_returns_in_progress(self, workflow, index, locks):
        locks.try_acquire(EntityType.PRODUCTS)

        result = await workflow.run(EntityType.PRODUCTS)

        assert result.in_progress
        assert result.success is False
        assert index.writes == []
        assert locks.is_locked(EntityType.PRODUCTS)

    @pytest.mark.asyncio
    async def test_concurrent_runs(self, index, locks):
        source = build_catalog(products=10, customers=0)
        workflow = FullResyncWorkflow(index, source, locks=locks, batch_size=2, yield_seconds=0.001)

        first, second = await asyncio.gather(
            workflow.run(EntityType.PRODUCTS),
            workflow.run(EntityType.PRODUCTS)
        )

        statuses = sorted([first.status, second.status])
        assert statuses == ["completed", "in_progress"]
        assert not locks.is_locked(EntityType.PRODUCTS)

    @pytest.mark.asyncio
    async def test_other_entity_not_blocked(self, workflow, locks):
        locks.try_acquire(EntityType.PRODUCTS)

        result = await workflow.run(EntityType.CUSTOMERS)

        assert result.status == "completed"

    @pytest.mark.asyncio
    async def test_lock_released_on_failure(self, workflow, index, locks):
        index.fail_writes(1)

        with pytest.raises(IndexUnavailableError):
            await workflow.run(EntityType.PRODUCTS)

        assert not locks.is_locked(EntityType.PRODUCTS)
        assert workflow.state_of(EntityType.PRODUCTS) == ResyncState.FAILED

        result = await workflow.run(EntityType.PRODUCTS)
        assert result.synced == 3
        assert workflow.state_of(EntityType.PRODUCTS) == ResyncState.DONE


class TestRebuild:
    """Test destructive rebuild mode"""

    @pytest.mark.asyncio
    async def test_rebuild_replaces_everything(self, workflow, index):
        index.seed(EntityType.PRODUCTS, [{"id": "stale", "updated_at": 1}], indexed_at=10 ** 15)

        result = await workflow.run(EntityType.PRODUCTS, rebuild=True)

        assert result.rebuild is True
        assert result.synced == 3
        assert set(index.documents(EntityType.PRODUCTS)) == {"prod_0", "prod_1", "prod_2"}
        assert index.writes[0][0] == "delete_all"

    @pytest.mark.asyncio
    async def test_rebuild_reports_progress_once(self, workflow):
        reports = []
        workflow.add_progress_callback(reports.append)

        await workflow.run(EntityType.PRODUCTS, rebuild=True)

        assert len(reports) == 1
        assert reports[0].synced == 3


class TestThreeProductScenario:
    """Create, edit and delete flowing through consecutive resyncs"""

    @pytest.mark.asyncio
    async def test_three_products(self, index, locks):
        from core.source.memory import InMemorySourceStore

        source = InMemorySourceStore()
        workflow = FullResyncWorkflow(index, source, locks=locks, batch_size=2500, yield_seconds=0)
        for i, sku in enumerate(["PAPER-A4", "PAPER-A3", "INK-BLACK"]):
            source.add_product(product(f"prod_{i}", created=1000 + i, skus=[sku],
                                       categories=[category("paper")] if i < 2 else []))

        first = await workflow.run(EntityType.PRODUCTS)
        assert first.synced == 3
        assert first.with_category == 2

        source.add_product(product("prod_2", created=1002, updated=5000, skus=["INK-BLUE"], title="Blue ink"))
        index.age(EntityType.PRODUCTS)
        second = await workflow.run(EntityType.PRODUCTS)
        assert second.deleted == 0
        assert index.documents(EntityType.PRODUCTS)["prod_2"]["variant_sku"] == ["INK-BLUE"]
        assert index.documents(EntityType.PRODUCTS)["prod_2"]["updated_at"] == 5000

        source.remove_product("prod_0")
        index.age(EntityType.PRODUCTS)
        third = await workflow.run(EntityType.PRODUCTS)
        assert third.deleted == 1
        assert set(index.documents(EntityType.PRODUCTS)) == {"prod_1", "prod_2"}
