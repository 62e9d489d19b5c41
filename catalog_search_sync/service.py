"""
Service wiring for catalog-search-sync.

Builds the index client, source store, workflows, drift detector, event
engine and scheduler from one SyncServiceConfig and manages their lifecycle.
"""

import logging
import time
from typing import Any, Dict, Optional

from core.exceptions import IndexUnavailableError, SourceUnavailableError
from core.indexer.drift import DriftDetector
from core.indexer.periodic_sanity_task import ReconcileScheduler, TaskConfig
from core.models.config import SyncServiceConfig
from core.source import SourceStore, create_source_store
from core.storage import SearchIndexClient, EntityType
from core.sync import (
    FullResyncWorkflow,
    IncrementalUpsertWorkflow,
    SyncEngine,
    SyncLockRegistry,
    sync_locks,
)

logger = logging.getLogger(__name__)


class CatalogSyncService:
    """
    Owns every sync component for one deployment.

    Components are plain attributes so callers (route handler, CLI, tests)
    can reach the one they need.
    """

    def __init__(
        self,
        config: Optional[SyncServiceConfig] = None,
        index_client: Optional[SearchIndexClient] = None,
        source: Optional[SourceStore] = None,
        locks: Optional[SyncLockRegistry] = None
    ):
        """
        Initialize the service.

        Args:
            config: Service configuration (defaults if None)
            index_client: Search index client (built from config if None)
            source: Source store (built from config if None)
            locks: Lock registry (process-wide registry if None)
        """
        self.config = config or SyncServiceConfig()
        self.index = index_client or SearchIndexClient.from_config(self.config.search_index)
        self.source = source or create_source_store(self.config.source)
        self.locks = locks if locks is not None else sync_locks

        self.resync = FullResyncWorkflow.from_config(
            self.index, self.source, self.config.sync, locks=self.locks
        )
        self.incremental = IncrementalUpsertWorkflow(
            self.index,
            self.source,
            category_depth=self.config.sync.category_depth
        )
        self.detector = DriftDetector(
            self.source,
            self.index,
            self.resync,
            tolerance_ms=self.config.sync.tolerance_ms,
            category_depth=self.config.sync.category_depth
        )
        self.engine = SyncEngine.from_config(self.incremental, self.config.engine)
        self.scheduler = ReconcileScheduler(
            self.detector, TaskConfig.from_scheduler_config(self.config.scheduler)
        )

        self.is_running = False
        self.start_time: Optional[float] = None

        logger.info(
            f"Initialized {self.config.name} (source: {self.source.name}, index: {self.index.url})"
        )

    async def start(self) -> None:
        """Start the event engine and, when enabled, the scheduler"""
        if self.is_running:
            return
        await self.engine.start()
        if self.config.scheduler.enabled:
            await self.scheduler.start()
        self.is_running = True
        self.start_time = time.time()
        logger.info(f"{self.config.name} started")

    async def stop(self) -> None:
        """Stop background work and release clients"""
        await self.scheduler.stop()
        await self.engine.stop()
        await self.source.close()
        await self.index.disconnect()
        self.is_running = False
        logger.info(f"{self.config.name} stopped")

    async def health_check(self) -> Dict[str, Any]:
        """
        Check both stores.

        Returns:
            Health information with an overall ``healthy`` flag
        """
        index_health = await self.index.health_check()

        collections: Dict[str, Any] = {}
        if index_health.get("status") == "healthy":
            try:
                for entity_type in EntityType:
                    info = await self.index.get_collection_info(entity_type)
                    collections[entity_type.value] = None if info is None else {
                        **info.model_dump(),
                        "ready": info.is_ready
                    }
            except IndexUnavailableError as e:
                index_health["status"] = "unhealthy"
                index_health["error"] = str(e)
        index_health["collections"] = collections

        source_health: Dict[str, Any] = {"name": self.source.name}
        try:
            start = time.time()
            source_health["products"] = await self.source.count_records(EntityType.PRODUCTS)
            source_health["response_time_ms"] = (time.time() - start) * 1000
            source_health["status"] = "healthy"
        except SourceUnavailableError as e:
            source_health["status"] = "unhealthy"
            source_health["error"] = str(e)

        return {
            "healthy": index_health.get("status") == "healthy" and source_health["status"] == "healthy",
            "index": index_health,
            "source": source_health,
            "locks": self.locks.get_status(),
            "uptime_seconds": time.time() - self.start_time if self.start_time else 0.0
        }

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": self.config.name,
            "is_running": self.is_running,
            "engine": self.engine.get_status(),
            "scheduler": self.scheduler.get_status(),
            "locks": self.locks.get_status(),
            "index": self.index.get_performance_metrics()
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
