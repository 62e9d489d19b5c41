"""
Tests for drift detection, reconciliation and stale-document repair.
"""

import pytest

from core.exceptions import IndexUnavailableError
from core.indexer.drift import DriftDetector, DriftSignal, ReconcileResult
from core.storage.schemas import EntityType
from core.sync.full_resync import FullResyncWorkflow
from core.sync.lock import SyncLockRegistry

from tests.fixtures.catalog import FakeSearchIndex, build_catalog, inventory_variant, product


@pytest.fixture
def source():
    return build_catalog(products=100, customers=3)


@pytest.fixture
def index():
    return FakeSearchIndex()


@pytest.fixture
def locks():
    return SyncLockRegistry()


@pytest.fixture
def resync(index, source, locks):
    return FullResyncWorkflow(index, source, locks=locks, batch_size=40, yield_seconds=0)


@pytest.fixture
def detector(source, index, resync):
    return DriftDetector(source, index, resync, tolerance_ms=2000)


def signal(source_count=1, index_count=1, source_latest=1000, index_latest=1000, tolerance_ms=2000):
    return DriftSignal(
        entity_type=EntityType.PRODUCTS,
        source_count=source_count,
        index_count=index_count,
        source_latest=source_latest,
        index_latest=index_latest,
        tolerance_ms=tolerance_ms
    )


class TestDriftSignal:
    """Test the two-signal sync rule"""

    def test_aligned(self):
        assert signal().in_sync

    def test_count_mismatch(self):
        assert not signal(source_count=100, index_count=99).in_sync

    def test_within_tolerance(self):
        assert signal(source_latest=3000, index_latest=1000).in_sync

    def test_beyond_tolerance(self):
        check = signal(source_latest=3001, index_latest=1000)

        assert check.freshness_delta_ms == 2001
        assert not check.freshness_ok
        assert not check.in_sync

    def test_one_side_missing_timestamp(self):
        assert not signal(index_latest=None).freshness_ok
        assert not signal(source_latest=None).freshness_ok

    def test_both_sides_missing_timestamp(self):
        assert signal(source_latest=None, index_latest=None).freshness_ok

    def test_empty_source_never_in_sync(self):
        check = signal(source_count=0, index_count=0, source_latest=None, index_latest=None)

        assert check.count_matches
        assert check.freshness_ok
        assert not check.in_sync

    def test_to_dict(self):
        data = signal(source_count=2, index_count=1).to_dict()

        assert data["entity"] == "products"
        assert data["count_matches"] is False
        assert data["in_sync"] is False


class TestReconcile:
    """Test drift-triggered resync"""

    @pytest.mark.asyncio
    async def test_aligned_index_already_synced(self, detector, resync, index):
        await resync.run(EntityType.PRODUCTS)
        writes_before = len(index.writes)

        result = await detector.reconcile(EntityType.PRODUCTS)

        assert result.success is True
        assert result.status == "already_synced"
        assert result.synced == 100
        assert len(index.writes) == writes_before
        assert result.message == "products index already in sync (100 documents)"

    @pytest.mark.asyncio
    async def test_missing_document_triggers_resync(self, detector, resync, index):
        await resync.run(EntityType.PRODUCTS)
        del index.documents(EntityType.PRODUCTS)["prod_42"]

        result = await detector.reconcile(EntityType.PRODUCTS)

        assert result.status == "synced_now"
        assert result.synced == 100
        assert result.signal.source_count == 100
        assert result.signal.index_count == 99
        assert "prod_42" in index.documents(EntityType.PRODUCTS)

    @pytest.mark.asyncio
    async def test_stale_timestamp_triggers_resync(self, detector, resync, index, source):
        await resync.run(EntityType.PRODUCTS)
        source.add_product(product("prod_7", created=1_700_000_007_000, updated=1_800_000_000_000, skus=["SKU-7"]))

        result = await detector.reconcile(EntityType.PRODUCTS)

        assert result.status == "synced_now"
        assert index.documents(EntityType.PRODUCTS)["prod_7"]["updated_at"] == 1_800_000_000_000

    @pytest.mark.asyncio
    async def test_first_run_indexes(self, detector, index):
        result = await detector.reconcile("customers")

        assert result.status == "synced_now"
        assert result.synced == 3
        assert len(index.documents(EntityType.CUSTOMERS)) == 3

    @pytest.mark.asyncio
    async def test_deletion_propagates(self, detector, resync, index, source):
        await resync.run(EntityType.PRODUCTS)
        index.age(EntityType.PRODUCTS)
        source.remove_product("prod_3")

        result = await detector.reconcile(EntityType.PRODUCTS)

        assert result.status == "synced_now"
        assert result.resync.deleted == 1
        assert "prod_3" not in index.documents(EntityType.PRODUCTS)
        assert len(index.documents(EntityType.PRODUCTS)) == 99

    @pytest.mark.asyncio
    async def test_lock_held_reports_in_progress(self, detector, locks):
        locks.try_acquire(EntityType.PRODUCTS)

        result = await detector.reconcile(EntityType.PRODUCTS)

        assert result.status == "sync_in_progress"
        assert result.success is True
        assert result.message == "A products sync is already in progress"

    @pytest.mark.asyncio
    async def test_inventory_counts_items(self, detector, resync, source):
        source.add_variant(inventory_variant("variant_orphan", None, ["iitem_orphan"]))
        await resync.run(EntityType.INVENTORY)

        result = await detector.reconcile(EntityType.INVENTORY)

        assert result.status == "already_synced"
        assert result.synced == 100

    @pytest.mark.asyncio
    async def test_transient_error_propagates(self, detector, index):
        index.fail_reads(1)

        with pytest.raises(IndexUnavailableError):
            await detector.reconcile(EntityType.PRODUCTS)

    @pytest.mark.asyncio
    async def test_reconcile_all_isolates_failures(self, detector, index):
        index.fail_reads(1)

        results = await detector.reconcile_all()

        assert results[EntityType.PRODUCTS].status == "failed"
        assert results[EntityType.PRODUCTS].success is False
        assert "connection refused" in results[EntityType.PRODUCTS].error
        assert results[EntityType.CUSTOMERS].status == "synced_now"
        assert results[EntityType.INVENTORY].status == "synced_now"

    def test_result_to_dict(self):
        result = ReconcileResult(
            entity_type=EntityType.CUSTOMERS, success=True, status="synced_now", synced=4
        )

        assert result.to_dict() == {
            "success": True,
            "status": "synced_now",
            "synced": 4,
            "message": "Synced 4 customers",
        }


class TestRepairStale:
    """Test targeted re-indexing of missing or outdated documents"""

    @pytest.mark.asyncio
    async def test_nothing_stale(self, detector, resync, index):
        await resync.run(EntityType.PRODUCTS)
        writes_before = len(index.writes)

        result = await detector.repair_stale(EntityType.PRODUCTS)

        assert result.checked == 100
        assert result.stale_ids == []
        assert result.repaired == 0
        assert len(index.writes) == writes_before

    @pytest.mark.asyncio
    async def test_only_stale_documents_written(self, detector, resync, index, source):
        await resync.run(EntityType.PRODUCTS)
        source.add_product(product("prod_9", created=1_700_000_009_000, updated=1_800_000_000_000, skus=["SKU-9"]))
        source.add_product(product("prod_new", created=1_800_000_000_000, skus=["NEW"]))

        result = await detector.repair_stale(EntityType.PRODUCTS, wait=True)

        assert sorted(result.stale_ids) == ["prod_9", "prod_new"]
        assert result.repaired == 2
        assert result.to_dict()["stale"] == 2
        assert sorted(index.writes[-1][2]) == ["prod_9", "prod_new"]
        assert index.documents(EntityType.PRODUCTS)["prod_9"]["updated_at"] == 1_800_000_000_000

    @pytest.mark.asyncio
    async def test_inventory_repair(self, detector, resync, index, source):
        await resync.run(EntityType.INVENTORY)
        source.add_variant(inventory_variant(
            "variant_5", "prod_5", ["iitem_5"], created=1_700_000_005_000, updated=1_800_000_000_000, stock=3
        ))

        result = await detector.repair_stale(EntityType.INVENTORY)

        assert result.stale_ids == ["iitem_5"]
        assert result.repaired == 1
        assert index.documents(EntityType.INVENTORY)["iitem_5"]["totalStock"] == 3

    @pytest.mark.asyncio
    async def test_deleted_records_not_reported(self, detector, resync, source):
        await resync.run(EntityType.CUSTOMERS)
        source.remove_customer("cus_1")

        result = await detector.find_stale(EntityType.CUSTOMERS)

        assert result.checked == 2
        assert result.stale_ids == []
