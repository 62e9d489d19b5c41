"""
Mutation Event Sync Engine.

Runs incremental index updates from a queue of mutation events with a pool of
background workers, retrying transient failures with exponential backoff.
"""

import asyncio
import logging
import random
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

from .events import MutationEvent
from .incremental import IncrementalUpsertWorkflow, IncrementalResult
from .queue import PriorityMutationQueue
from ..exceptions import TransientSyncError
from ..models.config import EngineConfig

logger = logging.getLogger(__name__)


class RetryConfig:
    """Retry configuration for transient event failures"""

    def __init__(
        self,
        max_retries: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        backoff_factor: float = 2.0,
        jitter: bool = True
    ):
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.jitter = jitter

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before the given retry (0-based)"""
        delay = min(self.initial_delay * (self.backoff_factor ** attempt), self.max_delay)

        if self.jitter:
            # Up to 20% extra so concurrent retries spread out
            delay += delay * 0.2 * random.random()

        return delay

    @classmethod
    def from_config(cls, config: EngineConfig) -> 'RetryConfig':
        return cls(
            max_retries=config.max_retries,
            initial_delay=config.initial_delay,
            max_delay=config.max_delay,
            backoff_factor=config.exponential_base,
            jitter=config.jitter
        )


@dataclass
class SyncEngineMetrics:
    """Metrics for monitoring event processing"""
    events_submitted: int = 0
    events_processed: int = 0
    events_failed: int = 0
    events_retried: int = 0

    documents_upserted: int = 0
    documents_deleted: int = 0
    events_skipped: int = 0

    avg_processing_time_ms: float = 0.0
    max_processing_time_ms: float = 0.0

    consecutive_errors: int = 0
    last_error_message: Optional[str] = None
    last_error_time: Optional[datetime] = None
    uptime_seconds: float = 0.0

    def record_result(self, result: IncrementalResult, processing_time_ms: float) -> None:
        self.events_processed += 1
        if result.action == "upserted":
            self.documents_upserted += len(result.document_ids)
        elif result.action == "deleted":
            self.documents_deleted += len(result.document_ids)
        else:
            self.events_skipped += 1

        self.avg_processing_time_ms = (
            (self.avg_processing_time_ms * (self.events_processed - 1) + processing_time_ms)
            / self.events_processed
        )
        self.max_processing_time_ms = max(self.max_processing_time_ms, processing_time_ms)
        self.consecutive_errors = 0

    def record_error(self, message: str) -> None:
        self.consecutive_errors += 1
        self.last_error_message = message
        self.last_error_time = datetime.now()


class SyncEngine:
    """
    Event-driven incremental sync.

    Features:
    - Priority queue with per-entity de-duplication
    - Configurable pool of worker tasks
    - Retry of transient failures with exponential backoff and jitter
    - Most recent failed events kept for inspection once retries are exhausted
    """

    def __init__(
        self,
        workflow: IncrementalUpsertWorkflow,
        max_queue_size: int = 10000,
        worker_count: int = 2,
        max_failed_events: int = 100,
        retry_config: Optional[RetryConfig] = None,
        metrics_callback: Optional[Callable[[SyncEngineMetrics], None]] = None
    ):
        """
        Initialize the sync engine.

        Args:
            workflow: Incremental workflow applied to each event
            max_queue_size: Maximum number of pending events
            worker_count: Number of background worker tasks
            max_failed_events: How many exhausted events to keep; older ones are dropped
            retry_config: Backoff settings for transient failures
            metrics_callback: Called with the metrics after every event
        """
        self.workflow = workflow
        self.worker_count = worker_count
        self.retry_config = retry_config or RetryConfig()
        self.metrics_callback = metrics_callback

        self.event_queue = PriorityMutationQueue(max_queue_size=max_queue_size)
        self.metrics = SyncEngineMetrics()
        self.failed_events: Deque[MutationEvent] = deque(maxlen=max_failed_events)

        self.is_running = False
        self.start_time: Optional[datetime] = None
        self.shutdown_event = asyncio.Event()
        self.workers: List[asyncio.Task] = []
        self._in_flight = 0

    @classmethod
    def from_config(
        cls,
        workflow: IncrementalUpsertWorkflow,
        config: EngineConfig,
        metrics_callback: Optional[Callable[[SyncEngineMetrics], None]] = None
    ) -> 'SyncEngine':
        return cls(
            workflow,
            max_queue_size=config.max_queue_size,
            worker_count=config.worker_count,
            max_failed_events=config.max_failed_events,
            retry_config=RetryConfig.from_config(config),
            metrics_callback=metrics_callback
        )

    async def start(self) -> bool:
        """
        Start the queue and background workers.

        Returns:
            True if startup was successful
        """
        if self.is_running:
            logger.warning("Sync engine is already running")
            return True

        logger.info("Starting SyncEngine")
        await self.event_queue.start()

        self.shutdown_event.clear()
        self.is_running = True
        self.start_time = datetime.now()
        self.workers = [
            asyncio.create_task(self._event_processing_worker(f"worker-{i}"))
            for i in range(self.worker_count)
        ]

        logger.info(f"Started sync engine with {len(self.workers)} workers")
        return True

    async def stop(self) -> None:
        """Stop workers and the queue; pending events are discarded"""
        if not self.is_running:
            return

        logger.info("Stopping SyncEngine")
        self.is_running = False
        self.shutdown_event.set()
        await self.event_queue.stop()

        for worker in self.workers:
            worker.cancel()

        if self.workers:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*self.workers, return_exceptions=True),
                    timeout=5.0
                )
            except asyncio.TimeoutError:
                logger.warning("Timeout waiting for workers to stop - forcing shutdown")
        self.workers = []

        if self.start_time:
            self.metrics.uptime_seconds = (datetime.now() - self.start_time).total_seconds()

        logger.info("Stopped SyncEngine")

    async def submit(self, event_name: str, entity_id: str) -> bool:
        """
        Queue a mutation event by name.

        Args:
            event_name: Wire name, e.g. ``product.updated``
            entity_id: Id of the mutated record

        Returns:
            True if queued, False if dropped as a duplicate or for lack of room

        Raises:
            UnsupportedEventError: Event name outside the observed set
        """
        event = MutationEvent.from_name(
            event_name, entity_id, max_retries=self.retry_config.max_retries
        )
        return await self.submit_event(event)

    async def submit_event(self, event: MutationEvent) -> bool:
        queued = await self.event_queue.enqueue(event)
        if queued:
            self.metrics.events_submitted += 1
        return queued

    async def join(self, poll_interval: float = 0.01) -> None:
        """Wait until the queue is empty and no event is being processed"""
        while len(self.event_queue) > 0 or self._in_flight > 0:
            await asyncio.sleep(poll_interval)

    async def process_event(self, event: MutationEvent) -> Optional[IncrementalResult]:
        """
        Apply one event, retrying transient failures.

        Returns:
            The workflow result, or None if the event ended up failed
        """
        event.mark_processing_started()
        start = datetime.now()

        while True:
            try:
                result = await self.workflow.handle(event)
            except TransientSyncError as e:
                event.mark_processing_failed(str(e))
                self.metrics.record_error(str(e))
                if not event.can_retry():
                    logger.error(f"Giving up on {event} after {event.retry_count} attempts: {e}")
                    self._record_failure(event)
                    return None

                delay = self.retry_config.get_delay(event.retry_count - 1)
                self.metrics.events_retried += 1
                logger.warning(f"Transient failure on {event}, retry {event.retry_count} in {delay:.2f}s: {e}")
                await asyncio.sleep(delay)
                continue
            except Exception as e:
                event.mark_processing_failed(str(e))
                self.metrics.record_error(str(e))
                logger.error(f"Error processing {event}: {e}")
                self._record_failure(event)
                return None

            event.mark_processing_completed()
            processing_time_ms = (datetime.now() - start).total_seconds() * 1000
            self.metrics.record_result(result, processing_time_ms)
            self._notify_metrics()
            return result

    def _record_failure(self, event: MutationEvent) -> None:
        self.failed_events.append(event)
        self.metrics.events_failed += 1
        self._notify_metrics()

    def _notify_metrics(self) -> None:
        if self.metrics_callback:
            try:
                self.metrics_callback(self.metrics)
            except Exception as e:
                logger.warning(f"Error in metrics callback: {e}")

    async def _event_processing_worker(self, worker_name: str) -> None:
        """
        Background worker pulling events off the queue.

        Args:
            worker_name: Name of the worker for logging
        """
        logger.info(f"Started event processing worker: {worker_name}")

        while self.is_running and not self.shutdown_event.is_set():
            try:
                event = await self.event_queue.dequeue(timeout=1.0)
                if event is None:
                    continue

                self._in_flight += 1
                try:
                    await self.process_event(event)
                finally:
                    self._in_flight -= 1

            except asyncio.CancelledError:
                break

        logger.info(f"Stopped event processing worker: {worker_name}")

    def get_status(self) -> Dict[str, Any]:
        """
        Get status information about the sync engine.

        Returns:
            Dictionary with status information
        """
        uptime = self.metrics.uptime_seconds
        if self.is_running and self.start_time:
            uptime = (datetime.now() - self.start_time).total_seconds()

        return {
            "is_running": self.is_running,
            "uptime_seconds": uptime,
            "worker_count": len(self.workers),
            "queue": self.event_queue.get_metrics(),
            "events_submitted": self.metrics.events_submitted,
            "events_processed": self.metrics.events_processed,
            "events_failed": self.metrics.events_failed,
            "events_retried": self.metrics.events_retried,
            "events_skipped": self.metrics.events_skipped,
            "documents_upserted": self.metrics.documents_upserted,
            "documents_deleted": self.metrics.documents_deleted,
            "avg_processing_time_ms": self.metrics.avg_processing_time_ms,
            "max_processing_time_ms": self.metrics.max_processing_time_ms,
            "consecutive_errors": self.metrics.consecutive_errors,
            "last_error": self.metrics.last_error_message,
            "last_error_time": self.metrics.last_error_time.isoformat() if self.metrics.last_error_time else None,
            "failed_events": [event.to_dict() for event in self.failed_events]
        }

    async def __aenter__(self):
        """Async context manager entry"""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.stop()
