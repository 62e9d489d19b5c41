"""
Search index client for catalog-search-sync.

Wraps the Qdrant document API for payload-only collections: schema
configuration, full replacement, incremental upsert/delete, write
confirmation and the reads drift detection needs.
"""

import asyncio
import logging
import time
from typing import Any, AsyncGenerator, Dict, List, Optional, Sequence, Tuple

from qdrant_client import QdrantClient
from qdrant_client.models import (
    PointStruct, Filter, FieldCondition, Range, HasIdCondition, FilterSelector,
    OrderBy, Direction, TextIndexParams, TokenizerType, PayloadSchemaType,
    UpdateStatus, CollectionStatus
)
from qdrant_client.http.models.models import PointIdsList
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from .schemas import (
    EntityType, CollectionConfig, IndexSchema, SearchIndexSchema, collection_name_for
)
from .utils import document_id_to_point_id, now_ms
from ..exceptions import IndexUnavailableError, IndexTimeoutError
from ..models.documents import SearchDocument
from ..models.storage import (
    TaskHandle, TaskState, IndexPoint, StorageResult, CollectionInfo
)

logger = logging.getLogger(__name__)

# Reserved point id used as a write barrier; never produced by document hashing in practice
BARRIER_POINT_ID = 0

_TRANSIENT_ERRORS = (
    ResponseHandlingException, UnexpectedResponse, ConnectionError, TimeoutError, OSError
)


class SearchIndexClient:
    """
    Qdrant-backed search index writer.

    Features:
    - Vector-less collections with declarative payload indexes per entity
    - Bulk and single-document writes keyed by document id
    - Write handles with optional blocking confirmation
    - Sorted single-point reads for freshness checks
    """

    def __init__(
        self,
        url: str = "http://localhost:6333",
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        collection_prefix: Optional[str] = None,
        poll_interval_seconds: float = 0.05,
        max_poll_attempts: int = 200,
        upsert_batch_size: int = 500,
        scroll_page_size: int = 1000
    ):
        """
        Initialize search index client.

        Args:
            url: Qdrant server URL, or ":memory:" for an in-process index
            api_key: Optional API key for authentication
            timeout: Request timeout in seconds
            collection_prefix: Optional prefix for collection names
            poll_interval_seconds: Delay between write confirmation attempts
            max_poll_attempts: Confirmation attempts before giving up
            upsert_batch_size: Points per upsert request
            scroll_page_size: Points per scroll page on reads
        """
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.collection_prefix = collection_prefix
        self.poll_interval_seconds = poll_interval_seconds
        self.max_poll_attempts = max_poll_attempts
        self.upsert_batch_size = upsert_batch_size
        self.scroll_page_size = scroll_page_size

        self._client: Optional[QdrantClient] = None
        self._connection_lock = asyncio.Lock()

        # Performance tracking
        self._total_requests = 0
        self._total_request_time = 0.0
        self._failed_requests = 0

        logger.info(f"Initialized SearchIndexClient: {url}")

    @classmethod
    def from_config(cls, config) -> 'SearchIndexClient':
        """Create client from a SearchIndexConfig"""
        return cls(
            url=config.url,
            api_key=config.api_key,
            timeout=config.timeout,
            collection_prefix=config.collection_prefix,
            poll_interval_seconds=config.poll_interval_seconds,
            max_poll_attempts=config.max_poll_attempts,
            scroll_page_size=config.scroll_page_size
        )

    @property
    def client(self) -> QdrantClient:
        """Get Qdrant client instance"""
        if self._client is None:
            if self.url == ":memory:":
                self._client = QdrantClient(location=":memory:")
            else:
                self._client = QdrantClient(
                    url=self.url,
                    api_key=self.api_key,
                    timeout=int(self.timeout)
                )
        return self._client

    def collection_name(self, entity_type: EntityType) -> str:
        """Collection holding documents of an entity type"""
        return collection_name_for(entity_type, self.collection_prefix)

    async def _call(self, operation: str, func, *args, **kwargs):
        """Run a blocking Qdrant call off the event loop, mapping I/O failures"""
        start_time = time.time()
        self._total_requests += 1
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except _TRANSIENT_ERRORS as e:
            self._failed_requests += 1
            logger.error(f"Search index {operation} failed: {e}")
            raise IndexUnavailableError(f"Search index {operation} failed: {e}") from e
        finally:
            self._total_request_time += time.time() - start_time

    async def disconnect(self) -> None:
        """Close the underlying Qdrant client"""
        async with self._connection_lock:
            if self._client is not None:
                self._client.close()
                self._client = None
            logger.info("Disconnected from search index")

    async def health_check(self) -> Dict[str, Any]:
        """
        Check search index health.

        Returns:
            Health status information
        """
        try:
            start_time = time.time()
            collections = await self._call("health check", self.client.get_collections)
            elapsed = time.time() - start_time

            return {
                "status": "healthy",
                "response_time_ms": elapsed * 1000,
                "collections_count": len(collections.collections),
                "url": self.url
            }

        except IndexUnavailableError as e:
            return {
                "status": "unhealthy",
                "error": str(e),
                "url": self.url
            }

    async def collection_exists(self, entity_type: EntityType) -> bool:
        """Check whether the entity's collection exists"""
        return await self._call(
            "collection lookup", self.client.collection_exists,
            collection_name=self.collection_name(entity_type)
        )

    async def configure_schema(
        self,
        entity_type: EntityType,
        filterable: Optional[Sequence[str]] = None,
        sortable: Optional[Sequence[str]] = None,
        searchable: Optional[Sequence[str]] = None
    ) -> StorageResult:
        """
        Create the collection when missing and declare its payload indexes.

        Idempotent: existing indexes are left in place, so it is safe to call
        before every full resync. Attribute sets default to the entity's
        declared schema.

        Args:
            entity_type: Indexed entity type
            filterable: Fields usable in filters
            sortable: Fields usable for ordering
            searchable: Fields matched by full-text queries

        Returns:
            Storage operation result with the number of indexes created
        """
        start_time = time.time()
        default_schema = SearchIndexSchema.get_schema(entity_type)
        schema = IndexSchema(
            entity_type=entity_type,
            filterable=list(filterable) if filterable is not None else default_schema.filterable,
            sortable=list(sortable) if sortable is not None else default_schema.sortable,
            searchable=list(searchable) if searchable is not None else default_schema.searchable,
            field_types=default_schema.field_types
        )
        errors = SearchIndexSchema.validate_schema(schema)
        if errors:
            raise ValueError(f"Invalid schema for {entity_type.value}: {'; '.join(errors)}")

        config = SearchIndexSchema.get_collection_config(
            self.collection_name(entity_type), schema
        )

        if not await self.collection_exists(entity_type):
            await self._call(
                "create collection",
                self.client.create_collection,
                collection_name=config.name,
                vectors_config={},
                replication_factor=config.replication_factor,
                write_consistency_factor=config.write_consistency_factor,
                on_disk_payload=config.on_disk_payload
            )
            logger.info(f"Created collection '{config.name}' ({entity_type.value})")
            existing_fields = set()
        else:
            info = await self._call(
                "collection info", self.client.get_collection, collection_name=config.name
            )
            existing_fields = set((info.payload_schema or {}).keys())

        created = await self._create_payload_indexes(config, existing_fields)
        processing_time = (time.time() - start_time) * 1000

        logger.info(
            f"Configured schema for '{config.name}': {created} new indexes "
            f"in {processing_time:.2f}ms"
        )
        return StorageResult.successful_configure(config.name, created, processing_time)

    async def _create_payload_indexes(
        self,
        config: CollectionConfig,
        existing_fields: set
    ) -> int:
        """Create payload indexes missing from the collection"""
        created = 0
        for index_config in config.payload_indexes:
            if index_config.field_name in existing_fields:
                continue

            if index_config.field_type == "text":
                field_schema = TextIndexParams(
                    type="text",
                    tokenizer=TokenizerType.PREFIX,
                    min_token_len=1,
                    max_token_len=20,
                    lowercase=True
                )
            else:
                schema_type_map = {
                    'keyword': PayloadSchemaType.KEYWORD,
                    'integer': PayloadSchemaType.INTEGER,
                    'float': PayloadSchemaType.FLOAT,
                    'bool': PayloadSchemaType.BOOL
                }
                field_schema = schema_type_map.get(
                    index_config.to_qdrant_schema(), PayloadSchemaType.KEYWORD
                )

            await self._call(
                "create payload index",
                self.client.create_payload_index,
                collection_name=config.name,
                field_name=index_config.field_name,
                field_schema=field_schema,
                wait=True
            )
            created += 1
            logger.debug(
                f"Created {index_config.field_type} index on {config.name}.{index_config.field_name}"
            )
        return created

    def _to_points(self, documents: Sequence[SearchDocument], indexed_at: int) -> List[PointStruct]:
        """Convert documents to payload-only Qdrant points"""
        points = []
        for document in documents:
            payload = document.to_payload()
            payload["indexed_at"] = indexed_at
            point = IndexPoint(id=document_id_to_point_id(document.id), payload=payload)
            points.append(PointStruct(id=point.id, vector={}, payload=point.payload))
        return points

    @staticmethod
    def _handle_from_result(
        collection_name: str,
        operation: str,
        result: Any,
        document_count: int
    ) -> TaskHandle:
        """Build a write handle from a Qdrant UpdateResult"""
        status = getattr(result, "status", None)
        return TaskHandle(
            collection_name=collection_name,
            operation=operation,
            operation_id=getattr(result, "operation_id", None),
            state=TaskState.COMPLETED if status == UpdateStatus.COMPLETED else TaskState.ENQUEUED,
            document_count=document_count
        )

    async def upsert(
        self,
        entity_type: EntityType,
        documents: Sequence[SearchDocument],
        wait: bool = False
    ) -> TaskHandle:
        """
        Upsert documents, replacing any existing document with the same id.

        Args:
            entity_type: Indexed entity type
            documents: Documents to write
            wait: Block until the write is confirmed durable

        Returns:
            Handle for the last write request
        """
        collection_name = self.collection_name(entity_type)
        if not documents:
            return TaskHandle.completed_noop(collection_name)

        start_time = time.time()
        points = self._to_points(documents, now_ms())
        handle = TaskHandle.completed_noop(collection_name)

        for i in range(0, len(points), self.upsert_batch_size):
            batch = points[i:i + self.upsert_batch_size]
            result = await self._call(
                "upsert",
                self.client.upsert,
                collection_name=collection_name,
                points=batch,
                wait=False
            )
            handle = self._handle_from_result(collection_name, "upsert", result, len(points))
            logger.debug(
                f"Upserted batch {i // self.upsert_batch_size + 1}: "
                f"{len(batch)} points to {collection_name}"
            )

        processing_time = (time.time() - start_time) * 1000
        logger.info(
            f"Upserted {len(points)} documents to {collection_name} in {processing_time:.2f}ms"
        )

        if wait:
            await self.wait_for(handle)
            handle = handle.model_copy(update={"state": TaskState.COMPLETED})
        return handle

    async def delete_by_id(
        self,
        entity_type: EntityType,
        document_id: str,
        wait: bool = False
    ) -> TaskHandle:
        """Delete one document by its id"""
        return await self.delete_many(entity_type, [document_id], wait=wait)

    async def delete_many(
        self,
        entity_type: EntityType,
        document_ids: Sequence[str],
        wait: bool = False,
        indexed_before: Optional[int] = None
    ) -> TaskHandle:
        """
        Delete documents by id.

        Args:
            entity_type: Indexed entity type
            document_ids: Ids of documents to delete
            wait: Block until the delete is confirmed durable
            indexed_before: When set, only documents whose indexed_at is older
                than this epoch ms are deleted; newer rewrites survive

        Returns:
            Handle for the delete request
        """
        collection_name = self.collection_name(entity_type)
        if not document_ids:
            return TaskHandle.completed_noop(collection_name)

        point_ids = [document_id_to_point_id(doc_id) for doc_id in document_ids]
        if indexed_before is None:
            selector = PointIdsList(points=point_ids)
        else:
            selector = FilterSelector(filter=Filter(must=[
                HasIdCondition(has_id=point_ids),
                FieldCondition(key="indexed_at", range=Range(lt=indexed_before))
            ]))

        result = await self._call(
            "delete",
            self.client.delete,
            collection_name=collection_name,
            points_selector=selector,
            wait=False
        )
        logger.info(f"Deleted up to {len(point_ids)} documents from {collection_name}")

        handle = self._handle_from_result(collection_name, "delete", result, len(point_ids))
        if wait:
            await self.wait_for(handle)
            handle = handle.model_copy(update={"state": TaskState.COMPLETED})
        return handle

    async def replace_all(
        self,
        entity_type: EntityType,
        documents: Sequence[SearchDocument],
        wait: bool = False
    ) -> TaskHandle:
        """
        Delete every document of the entity type, then insert the fresh set.

        The two steps are separate requests; readers may observe an empty or
        partial collection between them.
        """
        collection_name = self.collection_name(entity_type)
        await self._call(
            "delete all",
            self.client.delete,
            collection_name=collection_name,
            points_selector=FilterSelector(filter=Filter()),
            wait=False
        )
        logger.info(f"Cleared all documents from {collection_name}")

        handle = await self.upsert(entity_type, documents, wait=wait)
        return handle.model_copy(update={"operation": "replace_all"})

    async def wait_for(self, handle: TaskHandle) -> None:
        """
        Block until a write is applied.

        Qdrant applies updates to a collection in order, so a confirmed barrier
        write issued after the handle's write means the handle's write is
        visible. The barrier is retried until confirmed, up to
        ``max_poll_attempts``.

        Raises:
            IndexTimeoutError: Write not confirmed within the polling budget
            IndexUnavailableError: Collection is in a failed state
        """
        if handle.is_completed:
            return

        for attempt in range(1, self.max_poll_attempts + 1):
            result = await self._call(
                "write barrier",
                self.client.delete,
                collection_name=handle.collection_name,
                points_selector=PointIdsList(points=[BARRIER_POINT_ID]),
                wait=True
            )
            if getattr(result, "status", None) == UpdateStatus.COMPLETED:
                logger.debug(
                    f"Write {handle.operation_id} on {handle.collection_name} "
                    f"confirmed after {attempt} attempt(s)"
                )
                return

            info = await self._call(
                "collection info", self.client.get_collection,
                collection_name=handle.collection_name
            )
            if info.status == CollectionStatus.RED:
                raise IndexUnavailableError(
                    f"Collection {handle.collection_name} is in a failed state"
                )
            await asyncio.sleep(self.poll_interval_seconds)

        raise IndexTimeoutError(
            f"Write {handle.operation_id} on {handle.collection_name} not confirmed "
            f"after {self.max_poll_attempts} attempts"
        )

    async def count_documents(self, entity_type: EntityType) -> int:
        """Exact number of documents of an entity type (0 when unconfigured)"""
        if not await self.collection_exists(entity_type):
            return 0
        result = await self._call(
            "count",
            self.client.count,
            collection_name=self.collection_name(entity_type),
            exact=True
        )
        return result.count if result else 0

    async def latest_updated_at(self, entity_type: EntityType) -> Optional[int]:
        """
        Most recent document updated_at via one sorted single-point scroll.

        Returns:
            Epoch ms, or None for an empty or unconfigured collection
        """
        if not await self.collection_exists(entity_type):
            return None
        points, _ = await self._call(
            "latest updated_at",
            self.client.scroll,
            collection_name=self.collection_name(entity_type),
            limit=1,
            order_by=OrderBy(key="updated_at", direction=Direction.DESC),
            with_payload=["updated_at"],
            with_vectors=False
        )
        if not points:
            return None
        value = (points[0].payload or {}).get("updated_at")
        return int(value) if value is not None else None

    async def get_document(
        self,
        entity_type: EntityType,
        document_id: str
    ) -> Optional[Dict[str, Any]]:
        """Fetch one document payload by id"""
        if not await self.collection_exists(entity_type):
            return None
        records = await self._call(
            "retrieve",
            self.client.retrieve,
            collection_name=self.collection_name(entity_type),
            ids=[document_id_to_point_id(document_id)],
            with_payload=True,
            with_vectors=False
        )
        if not records:
            return None
        return dict(records[0].payload or {})

    async def iter_document_stamps(
        self,
        entity_type: EntityType,
        indexed_before: Optional[int] = None,
        stamp_field: str = "indexed_at"
    ) -> AsyncGenerator[Tuple[str, int], None]:
        """
        Stream (document id, stamp) pairs page by page.

        Args:
            entity_type: Indexed entity type
            indexed_before: Only yield documents indexed before this epoch ms
            stamp_field: Epoch ms payload field to yield, indexed_at or updated_at
        """
        if not await self.collection_exists(entity_type):
            return

        scroll_filter = None
        if indexed_before is not None:
            scroll_filter = Filter(must=[
                FieldCondition(key="indexed_at", range=Range(lt=indexed_before))
            ])

        offset = None
        while True:
            points, offset = await self._call(
                "scroll",
                self.client.scroll,
                collection_name=self.collection_name(entity_type),
                scroll_filter=scroll_filter,
                limit=self.scroll_page_size,
                offset=offset,
                with_payload=["id", stamp_field],
                with_vectors=False
            )
            for point in points:
                payload = point.payload or {}
                if payload.get("id"):
                    yield payload["id"], int(payload.get(stamp_field) or 0)
            if offset is None:
                break

    async def get_collection_info(self, entity_type: EntityType) -> Optional[CollectionInfo]:
        """Get information about an entity's collection"""
        if not await self.collection_exists(entity_type):
            return None
        name = self.collection_name(entity_type)
        info = await self._call("collection info", self.client.get_collection, collection_name=name)
        status = info.status.value if hasattr(info.status, "value") else str(info.status)
        return CollectionInfo(
            name=name,
            points_count=info.points_count or 0,
            status=status,
            indexed_fields=sorted((info.payload_schema or {}).keys())
        )

    def get_performance_metrics(self) -> Dict[str, Any]:
        """Get client performance metrics"""
        return {
            "total_requests": self._total_requests,
            "total_request_time_s": self._total_request_time,
            "failed_requests": self._failed_requests,
            "average_request_time_ms": (
                self._total_request_time / max(1, self._total_requests) * 1000
            ),
            "success_rate": (
                (self._total_requests - self._failed_requests) / max(1, self._total_requests)
            ),
            "url": self.url
        }
