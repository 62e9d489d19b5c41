"""
Full resync ("sync now") workflow.

Pages through the source of truth in large batches, upserts every transformed
batch, then sweeps documents that no longer have a source record. Guarded by
the per-entity sync lock so at most one resync per entity type runs at a time.
"""

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from .lock import SyncLockRegistry, sync_locks
from ..indexer.transformer import transform_records, MAX_CATEGORY_DEPTH
from ..models.documents import SearchDocument, CustomerDocument
from ..models.storage import TaskHandle
from ..source.base import SourceStore
from ..storage.client import SearchIndexClient
from ..storage.schemas import EntityType
from ..storage.utils import now_ms

logger = logging.getLogger(__name__)


class ResyncState(Enum):
    """Lifecycle of one full resync run"""
    IDLE = "idle"
    LOCKED = "locked"
    FETCHING = "fetching"
    TRANSFORMING = "transforming"
    WRITING = "writing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ResyncProgress:
    """Progress information reported after each batch"""
    entity_type: EntityType
    offset: int
    synced: int
    batches: int
    elapsed_time: float


@dataclass
class ResyncResult:
    """Result of a full resync run"""
    entity_type: EntityType
    success: bool
    status: str  # completed, in_progress
    synced: int = 0
    batches: int = 0
    deleted: int = 0
    orphans_skipped: int = 0
    with_category: int = 0
    with_company: int = 0
    category_stats: Dict[str, int] = field(default_factory=dict)
    processing_time_ms: float = 0.0
    rebuild: bool = False
    task_handle: Optional[TaskHandle] = None

    @property
    def in_progress(self) -> bool:
        return self.status == "in_progress"

    @classmethod
    def already_running(cls, entity_type: EntityType) -> 'ResyncResult':
        """Result for a run skipped because another holds the lock"""
        return cls(entity_type=entity_type, success=False, status="in_progress")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary with the entity's aggregate names"""
        data: Dict[str, Any] = {
            "entity": self.entity_type.value,
            "success": self.success,
            "status": self.status,
            "synced": self.synced,
            "batches": self.batches,
            "deleted": self.deleted,
            "processing_time_ms": self.processing_time_ms,
        }
        if self.entity_type == EntityType.PRODUCTS:
            data["products_with_category"] = self.with_category
        elif self.entity_type == EntityType.INVENTORY:
            data["items_with_category"] = self.with_category
            data["orphans_skipped"] = self.orphans_skipped
            data["category_stats"] = dict(self.category_stats)
        elif self.entity_type == EntityType.CUSTOMERS:
            data["customers_with_company"] = self.with_company
        return data


def _chunk_list(items: List[Any], chunk_size: int) -> List[List[Any]]:
    """Split a list into chunks of at most chunk_size"""
    return [items[i:i + chunk_size] for i in range(0, len(items), chunk_size)]


class FullResyncWorkflow:
    """
    Full catalog resync for one entity type.

    Each run:
    1. Takes the entity's sync lock or returns ``in_progress`` untouched
    2. Configures the index schema (idempotent)
    3. Pages the source (created_at desc, then id) in ``batch_size`` batches,
       transforming and upserting each, yielding to the loop between batches
    4. Sweeps documents not seen this run that were indexed before it began
    5. Optionally waits for the last write to be confirmed
    6. Releases the lock, also on failure

    Batches already written stay written when a run fails; the next run starts
    again from offset 0.
    """

    def __init__(
        self,
        index_client: SearchIndexClient,
        source: SourceStore,
        locks: Optional[SyncLockRegistry] = None,
        batch_size: int = 2500,
        yield_seconds: float = 0.02,
        category_depth: int = MAX_CATEGORY_DEPTH,
        sweep_chunk_size: int = 500
    ):
        """
        Initialize full resync workflow.

        Args:
            index_client: Search index writer
            source: Source-of-truth store
            locks: Lock registry (process-wide registry by default)
            batch_size: Source records per page
            yield_seconds: Pause between batches
            category_depth: Ancestor levels included in category handles
            sweep_chunk_size: Document ids per sweep delete request
        """
        self.index = index_client
        self.source = source
        self.locks = locks if locks is not None else sync_locks
        self.batch_size = batch_size
        self.yield_seconds = yield_seconds
        self.category_depth = category_depth
        self.sweep_chunk_size = sweep_chunk_size

        self._states: Dict[EntityType, ResyncState] = {e: ResyncState.IDLE for e in EntityType}
        self._offsets: Dict[EntityType, int] = {e: 0 for e in EntityType}
        self._progress_callbacks: List[Callable[[ResyncProgress], None]] = []

    @classmethod
    def from_config(
        cls,
        index_client: SearchIndexClient,
        source: SourceStore,
        sync_config,
        locks: Optional[SyncLockRegistry] = None
    ) -> 'FullResyncWorkflow':
        """Create workflow from a SyncConfig"""
        return cls(
            index_client,
            source,
            locks=locks,
            batch_size=sync_config.batch_size,
            yield_seconds=sync_config.yield_seconds,
            category_depth=sync_config.category_depth,
            sweep_chunk_size=sync_config.sweep_chunk_size
        )

    def add_progress_callback(self, callback: Callable[[ResyncProgress], None]) -> None:
        """Add progress callback function"""
        self._progress_callbacks.append(callback)

    def remove_progress_callback(self, callback: Callable[[ResyncProgress], None]) -> None:
        """Remove progress callback function"""
        if callback in self._progress_callbacks:
            self._progress_callbacks.remove(callback)

    def state_of(self, entity_type: EntityType) -> ResyncState:
        """Current state of the entity's run"""
        return self._states[entity_type]

    def offset_of(self, entity_type: EntityType) -> int:
        """Pagination cursor of the entity's current or last run"""
        return self._offsets[entity_type]

    def _set_state(self, entity_type: EntityType, state: ResyncState) -> None:
        self._states[entity_type] = state
        logger.debug(f"Resync {entity_type.value}: {state.value}")

    def _notify(self, progress: ResyncProgress) -> None:
        for callback in self._progress_callbacks:
            try:
                callback(progress)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    async def run(
        self,
        entity_type: EntityType,
        wait: bool = False,
        rebuild: bool = False
    ) -> ResyncResult:
        """
        Run a full resync for one entity type.

        Args:
            entity_type: Entity type (or its name) to resync
            wait: Block until the index confirms the last write
            rebuild: Delete every document first and insert the full set
                (readers may see an empty index meanwhile)

        Returns:
            ResyncResult; status ``in_progress`` when another run holds the lock
        """
        entity_type = EntityType.parse(entity_type)
        if not self.locks.try_acquire(entity_type):
            logger.info(f"Full resync of {entity_type.value} already in progress, skipping")
            return ResyncResult.already_running(entity_type)

        start_time = time.time()
        self._set_state(entity_type, ResyncState.LOCKED)
        self._offsets[entity_type] = 0
        logger.info(f"Starting full resync of {entity_type.value} (rebuild={rebuild})")

        try:
            await self.index.configure_schema(entity_type)

            if rebuild:
                result = await self._run_rebuild(entity_type, wait, start_time)
            else:
                result = await self._run_batched(entity_type, wait, start_time)

            result.processing_time_ms = (time.time() - start_time) * 1000
            self._set_state(entity_type, ResyncState.DONE)
            logger.info(
                f"Full resync of {entity_type.value} complete: {result.synced} synced, "
                f"{result.deleted} swept, {result.batches} batches "
                f"in {result.processing_time_ms:.0f}ms"
            )
            return result

        except Exception as e:
            self._set_state(entity_type, ResyncState.FAILED)
            logger.error(
                f"Full resync of {entity_type.value} failed at offset "
                f"{self._offsets[entity_type]}: {e}"
            )
            raise
        finally:
            self.locks.release(entity_type)

    async def _fetch_batch(self, entity_type: EntityType) -> List[Any]:
        self._set_state(entity_type, ResyncState.FETCHING)
        return await self.source.list_records(
            entity_type, take=self.batch_size, skip=self._offsets[entity_type]
        )

    async def _run_batched(
        self,
        entity_type: EntityType,
        wait: bool,
        start_time: float
    ) -> ResyncResult:
        """Upsert every page, then sweep what was not seen"""
        result = ResyncResult(entity_type=entity_type, success=True, status="completed")
        tracker = _AggregateTracker(entity_type)
        run_started_at = now_ms()
        last_handle: Optional[TaskHandle] = None

        while True:
            records = await self._fetch_batch(entity_type)
            if not records:
                break

            self._set_state(entity_type, ResyncState.TRANSFORMING)
            documents, dropped = transform_records(entity_type, records, self.category_depth)
            result.orphans_skipped += dropped

            if documents:
                self._set_state(entity_type, ResyncState.WRITING)
                last_handle = await self.index.upsert(entity_type, documents)
                tracker.add(documents)

            result.batches += 1
            self._offsets[entity_type] += len(records)
            self._notify(ResyncProgress(
                entity_type=entity_type,
                offset=self._offsets[entity_type],
                synced=tracker.count,
                batches=result.batches,
                elapsed_time=time.time() - start_time
            ))

            if len(records) < self.batch_size:
                break
            await asyncio.sleep(self.yield_seconds)

        self._set_state(entity_type, ResyncState.WRITING)
        result.deleted, sweep_handle = await self._sweep(entity_type, tracker, run_started_at)
        if sweep_handle is not None:
            last_handle = sweep_handle

        if wait and last_handle is not None:
            await self.index.wait_for(last_handle)

        tracker.fill(result)
        result.task_handle = last_handle
        return result

    async def _live_documents(self, entity_type: EntityType, document_ids: List[str]) -> List[SearchDocument]:
        """Fresh documents for the ids that still have an indexable source record"""
        if entity_type == EntityType.INVENTORY:
            records: List[Any] = []
            for item_id in document_ids:
                records.extend(await self.source.list_inventory_variants(item_id))
        else:
            records = await self.source.list_records(
                entity_type, take=len(document_ids), ids=document_ids
            )
        documents, _ = transform_records(entity_type, records, self.category_depth)
        wanted = set(document_ids)
        # Shared inventory items keep the last pair, as in the paged pass
        by_id = {document.id: document for document in documents if document.id in wanted}
        return list(by_id.values())

    async def _sweep(
        self,
        entity_type: EntityType,
        tracker: '_AggregateTracker',
        cutoff_ms: int
    ):
        """
        Delete documents whose source record is gone.

        Only documents indexed before the run started and not seen by the
        paged pass are candidates. Offset pages shift when records are deleted
        mid-run, so each candidate chunk is checked against the source: records
        that still exist are re-upserted, the rest deleted. The delete repeats
        the cutoff so documents rewritten by concurrent incremental upserts
        survive.

        Returns:
            Tuple of (deleted count, handle of the last write or None)
        """
        seen = tracker.seen
        candidates = []
        async for document_id, _ in self.index.iter_document_stamps(
            entity_type, indexed_before=cutoff_ms
        ):
            if document_id not in seen:
                candidates.append(document_id)

        if not candidates:
            return 0, None

        deleted = 0
        handle = None
        for chunk in _chunk_list(candidates, self.sweep_chunk_size):
            live = await self._live_documents(entity_type, chunk)
            if live:
                logger.info(
                    f"Re-indexing {len(live)} {entity_type.value} records skipped by shifted pages"
                )
                handle = await self.index.upsert(entity_type, live)
                tracker.add(live)

            live_ids = {document.id for document in live}
            gone = [document_id for document_id in chunk if document_id not in live_ids]
            if gone:
                handle = await self.index.delete_many(entity_type, gone, indexed_before=cutoff_ms)
                deleted += len(gone)

        if deleted:
            logger.info(f"Swept {deleted} {entity_type.value} documents without a source record")
        return deleted, handle

    async def _run_rebuild(
        self,
        entity_type: EntityType,
        wait: bool,
        start_time: float
    ) -> ResyncResult:
        """Collect every document, then delete-all and insert"""
        result = ResyncResult(
            entity_type=entity_type, success=True, status="completed", rebuild=True
        )
        tracker = _AggregateTracker(entity_type)
        documents_by_id: Dict[str, SearchDocument] = {}

        while True:
            records = await self._fetch_batch(entity_type)
            if not records:
                break

            self._set_state(entity_type, ResyncState.TRANSFORMING)
            documents, dropped = transform_records(entity_type, records, self.category_depth)
            result.orphans_skipped += dropped
            for document in documents:
                documents_by_id[document.id] = document

            result.batches += 1
            self._offsets[entity_type] += len(records)
            if len(records) < self.batch_size:
                break
            await asyncio.sleep(self.yield_seconds)

        self._set_state(entity_type, ResyncState.WRITING)
        documents = list(documents_by_id.values())
        handle = await self.index.replace_all(entity_type, documents, wait=wait)
        tracker.add(documents)
        self._notify(ResyncProgress(
            entity_type=entity_type,
            offset=self._offsets[entity_type],
            synced=tracker.count,
            batches=result.batches,
            elapsed_time=time.time() - start_time
        ))

        tracker.fill(result)
        result.task_handle = handle
        return result


class _AggregateTracker:
    """Per-document aggregates keyed by id so repeated ids count once"""

    def __init__(self, entity_type: EntityType):
        self.entity_type = entity_type
        self._handles: Dict[str, List[str]] = {}
        self._company: Dict[str, bool] = {}

    @property
    def seen(self) -> Set[str]:
        return set(self._handles.keys())

    @property
    def count(self) -> int:
        return len(self._handles)

    def add(self, documents: List[SearchDocument]) -> None:
        for document in documents:
            self._handles[document.id] = list(getattr(document, "category_handles", []))
            if isinstance(document, CustomerDocument):
                self._company[document.id] = bool(document.company_name)

    def fill(self, result: ResyncResult) -> None:
        result.synced = self.count
        result.with_category = sum(1 for handles in self._handles.values() if handles)
        result.with_company = sum(1 for has_company in self._company.values() if has_company)
        if self.entity_type == EntityType.INVENTORY:
            stats: Dict[str, int] = defaultdict(int)
            for handles in self._handles.values():
                for handle in handles:
                    stats[handle] += 1
            result.category_stats = dict(stats)
