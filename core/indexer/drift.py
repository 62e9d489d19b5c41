"""
Drift detection and reconciliation between the source of truth and the index.

A drift check compares two signals per entity type: the record count and the
most recent updated_at. Count alone misses in-place edits; freshness alone
misses deletions that bump no remaining timestamp. Only when both agree is
the index considered in sync; otherwise a full resync is run.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .transformer import transform_records, MAX_CATEGORY_DEPTH
from ..source.base import SourceStore
from ..storage.client import SearchIndexClient
from ..storage.schemas import EntityType
from ..sync.full_resync import FullResyncWorkflow, ResyncResult

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_MS = 2000
REPAIR_CHUNK_SIZE = 100


@dataclass
class DriftSignal:
    """Counts and freshness of one entity type on both sides"""
    entity_type: EntityType
    source_count: int
    index_count: int
    source_latest: Optional[int]
    index_latest: Optional[int]
    tolerance_ms: int = DEFAULT_TOLERANCE_MS

    @property
    def count_matches(self) -> bool:
        return self.source_count == self.index_count

    @property
    def freshness_delta_ms(self) -> Optional[int]:
        if self.source_latest is None or self.index_latest is None:
            return None
        return abs(self.source_latest - self.index_latest)

    @property
    def freshness_ok(self) -> bool:
        """Latest timestamps agree within tolerance; two empty sides agree"""
        if self.source_latest is None and self.index_latest is None:
            return True
        delta = self.freshness_delta_ms
        return delta is not None and delta <= self.tolerance_ms

    @property
    def in_sync(self) -> bool:
        # An empty source never counts as synced so a first run always indexes
        return self.count_matches and self.freshness_ok and self.source_count > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity_type.value,
            "source_count": self.source_count,
            "index_count": self.index_count,
            "source_latest": self.source_latest,
            "index_latest": self.index_latest,
            "freshness_delta_ms": self.freshness_delta_ms,
            "count_matches": self.count_matches,
            "freshness_ok": self.freshness_ok,
            "in_sync": self.in_sync,
        }


@dataclass
class ReconcileResult:
    """Outcome of one reconcile call"""
    entity_type: EntityType
    success: bool
    status: str  # already_synced, synced_now, sync_in_progress, failed
    synced: int = 0
    signal: Optional[DriftSignal] = None
    resync: Optional[ResyncResult] = None
    error: Optional[str] = None
    processing_time_ms: float = 0.0

    @property
    def message(self) -> str:
        entity = self.entity_type.value
        if self.status == "already_synced":
            return f"{entity} index already in sync ({self.synced} documents)"
        if self.status == "synced_now":
            return f"Synced {self.synced} {entity}"
        if self.status == "sync_in_progress":
            return f"A {entity} sync is already in progress"
        return f"{entity} reconcile failed: {self.error}"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "status": self.status,
            "synced": self.synced,
            "message": self.message,
        }
        if self.signal is not None:
            data["drift"] = self.signal.to_dict()
        if self.resync is not None:
            data["resync"] = self.resync.to_dict()
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class RepairResult:
    """Outcome of a targeted stale-document repair"""
    entity_type: EntityType
    checked: int = 0
    stale_ids: List[str] = field(default_factory=list)
    repaired: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity_type.value,
            "checked": self.checked,
            "stale": len(self.stale_ids),
            "repaired": self.repaired,
        }


class DriftDetector:
    """
    Compares source and index per entity type and resyncs on drift.

    Invoked on a schedule and on demand (e.g. the sync route). A healthy
    index costs two counts and two single-row sorted reads per entity.
    """

    def __init__(
        self,
        source: SourceStore,
        index_client: SearchIndexClient,
        resync_workflow: FullResyncWorkflow,
        tolerance_ms: int = DEFAULT_TOLERANCE_MS,
        category_depth: int = MAX_CATEGORY_DEPTH
    ):
        """
        Initialize drift detector.

        Args:
            source: Source-of-truth store
            index_client: Search index client
            resync_workflow: Full resync run when drift is found
            tolerance_ms: Allowed gap between latest timestamps
            category_depth: Ancestor levels used by stale repair
        """
        self.source = source
        self.index = index_client
        self.resync = resync_workflow
        self.tolerance_ms = tolerance_ms
        self.category_depth = category_depth

    async def check(self, entity_type: Union[EntityType, str]) -> DriftSignal:
        """
        Compute the drift signal for one entity type.

        Raises:
            TransientSyncError: Source or index unreachable
        """
        entity_type = EntityType.parse(entity_type)
        signal = DriftSignal(
            entity_type=entity_type,
            source_count=await self.source.count_records(entity_type),
            index_count=await self.index.count_documents(entity_type),
            source_latest=await self.source.latest_updated_at(entity_type),
            index_latest=await self.index.latest_updated_at(entity_type),
            tolerance_ms=self.tolerance_ms
        )
        logger.debug(f"Drift check {entity_type.value}: {signal.to_dict()}")
        return signal

    async def reconcile(
        self,
        entity_type: Union[EntityType, str],
        wait: bool = False
    ) -> ReconcileResult:
        """
        Resync an entity type only when drift is detected.

        Args:
            entity_type: Entity type (or its name)
            wait: Block until the index confirms the resync's writes

        Returns:
            ReconcileResult with status already_synced, synced_now or
            sync_in_progress

        Raises:
            UnknownEntityError: Entity name not recognised
            TransientSyncError: Source or index unreachable
        """
        entity_type = EntityType.parse(entity_type)
        start_time = time.time()

        signal = await self.check(entity_type)
        if signal.in_sync:
            logger.info(f"{entity_type.value} in sync ({signal.index_count} documents)")
            return ReconcileResult(
                entity_type=entity_type,
                success=True,
                status="already_synced",
                synced=signal.index_count,
                signal=signal,
                processing_time_ms=(time.time() - start_time) * 1000
            )

        logger.info(
            f"Drift detected for {entity_type.value}: source {signal.source_count} "
            f"vs index {signal.index_count}, latest delta {signal.freshness_delta_ms}ms"
        )
        resync = await self.resync.run(entity_type, wait=wait)
        status = "sync_in_progress" if resync.in_progress else "synced_now"
        return ReconcileResult(
            entity_type=entity_type,
            success=True,
            status=status,
            synced=resync.synced,
            signal=signal,
            resync=resync,
            processing_time_ms=(time.time() - start_time) * 1000
        )

    async def reconcile_all(self, wait: bool = False) -> Dict[EntityType, ReconcileResult]:
        """
        Reconcile every entity type; one failing entity does not stop the rest.

        Returns:
            Result per entity type; failures carry status ``failed``
        """
        results: Dict[EntityType, ReconcileResult] = {}
        for entity_type in EntityType:
            try:
                results[entity_type] = await self.reconcile(entity_type, wait=wait)
            except Exception as e:
                logger.error(f"Reconcile of {entity_type.value} failed: {e}")
                results[entity_type] = ReconcileResult(
                    entity_type=entity_type,
                    success=False,
                    status="failed",
                    error=str(e)
                )
        return results

    async def find_stale(self, entity_type: Union[EntityType, str]) -> RepairResult:
        """
        List documents missing from the index or older than their record.

        Deleted records are not reported; the full resync sweep removes those.
        """
        entity_type = EntityType.parse(entity_type)
        indexed: Dict[str, int] = {}
        async for document_id, updated_at in self.index.iter_document_stamps(
            entity_type, stamp_field="updated_at"
        ):
            indexed[document_id] = updated_at

        result = RepairResult(entity_type=entity_type)
        async for record_id, updated_at in self.source.iter_record_stamps(entity_type):
            result.checked += 1
            indexed_at = indexed.get(record_id)
            if indexed_at is None or (updated_at or 0) > indexed_at:
                result.stale_ids.append(record_id)
        return result

    async def repair_stale(
        self,
        entity_type: Union[EntityType, str],
        wait: bool = False
    ) -> RepairResult:
        """
        Re-index only the stale documents of an entity type.

        Args:
            entity_type: Entity type (or its name)
            wait: Block until the index confirms the write

        Returns:
            RepairResult with the stale ids found and documents written
        """
        entity_type = EntityType.parse(entity_type)
        result = await self.find_stale(entity_type)
        if not result.stale_ids:
            logger.info(f"No stale {entity_type.value} documents in {result.checked} checked")
            return result

        logger.info(f"Repairing {len(result.stale_ids)} stale {entity_type.value} documents")
        records = []
        if entity_type == EntityType.INVENTORY:
            for item_id in result.stale_ids:
                records.extend(await self.source.list_inventory_variants(item_id))
        else:
            for start in range(0, len(result.stale_ids), REPAIR_CHUNK_SIZE):
                chunk = result.stale_ids[start:start + REPAIR_CHUNK_SIZE]
                records.extend(await self.source.list_records(entity_type, take=len(chunk), ids=chunk))

        documents, _ = transform_records(entity_type, records, self.category_depth)
        wanted = set(result.stale_ids)
        # Several inventory pairs share one document id; keep the last as a resync would
        by_id = {document.id: document for document in documents if document.id in wanted}
        if by_id:
            await self.index.upsert(entity_type, list(by_id.values()), wait=wait)
        result.repaired = len(by_id)
        return result
