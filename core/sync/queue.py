"""
Priority Mutation Queue.

Provides asynchronous mutation event buffering with priority handling,
per-entity de-duplication and size limits.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import List, Optional, Dict, Any, Set, Tuple
import heapq
from dataclasses import dataclass

from .events import MutationEvent, EventPriority, EntityKind

logger = logging.getLogger(__name__)


@dataclass
class QueueMetrics:
    """Metrics for monitoring queue performance"""
    total_events_enqueued: int = 0
    total_events_dequeued: int = 0
    total_events_expired: int = 0
    total_events_deduplicated: int = 0
    current_queue_size: int = 0
    events_by_priority: Dict[EventPriority, int] = None
    events_by_kind: Dict[EntityKind, int] = None
    avg_wait_time_seconds: float = 0.0
    max_queue_size_reached: int = 0

    def __post_init__(self):
        if self.events_by_priority is None:
            self.events_by_priority = defaultdict(int)
        if self.events_by_kind is None:
            self.events_by_kind = defaultdict(int)


class PriorityMutationQueue:
    """
    Asynchronous priority queue for mutation events.

    Features:
    - Priority-based processing (deletions first, then updates, then creations)
    - One pending event per (kind, entity id); a deletion supersedes a pending
      create/update for the same entity
    - Size limits to prevent memory overflow
    - Event expiration to handle stale events
    """

    def __init__(
        self,
        max_queue_size: int = 10000,
        max_event_age_minutes: int = 60
    ):
        """
        Initialize the priority mutation queue.

        Args:
            max_queue_size: Maximum number of pending events
            max_event_age_minutes: Maximum age before event expires
        """
        self.max_queue_size = max_queue_size
        self.max_event_age_minutes = max_event_age_minutes

        self._queue: List[MutationEvent] = []
        self._queue_lock = asyncio.Lock()
        self._not_empty = asyncio.Event()

        # Pending event per entity, and heap entries replaced by a newer event
        self._pending: Dict[Tuple[str, str], MutationEvent] = {}
        self._superseded: Set[str] = set()

        self.metrics = QueueMetrics()
        self._start_time = datetime.now()
        self._running = False

        logger.info(f"Initialized PriorityMutationQueue with max_size={max_queue_size}")

    @property
    def is_active(self) -> bool:
        """Check if the queue is accepting events"""
        return self._running

    async def start(self) -> None:
        self._running = True
        logger.info("Started PriorityMutationQueue")

    async def stop(self) -> None:
        """Stop accepting events and wake any waiting consumers"""
        self._running = False
        self._not_empty.set()
        logger.info("Stopped PriorityMutationQueue")

    async def enqueue(self, event: MutationEvent) -> bool:
        """
        Add an event to the priority queue.

        Args:
            event: The mutation event to enqueue

        Returns:
            True if the event was queued, False if dropped (queue full,
            inactive, or an equivalent event is already pending)
        """
        if not self._running:
            return False

        async with self._queue_lock:
            key = event.dedupe_key
            pending = self._pending.get(key)
            if pending is not None:
                if event.is_deletion and not pending.is_deletion:
                    self._superseded.add(pending.event_id)
                    logger.debug(f"Deletion supersedes pending event: {pending}")
                else:
                    self.metrics.total_events_deduplicated += 1
                    logger.debug(f"Dropping duplicate event: {event}")
                    return False
            elif len(self._pending) >= self.max_queue_size:
                logger.warning(f"Queue full ({len(self._pending)} events), dropping event: {event}")
                return False

            heapq.heappush(self._queue, event)
            self._pending[key] = event

            self.metrics.total_events_enqueued += 1
            self.metrics.current_queue_size = len(self._pending)
            self.metrics.events_by_priority[event.priority] += 1
            self.metrics.events_by_kind[event.kind] += 1
            self.metrics.max_queue_size_reached = max(
                self.metrics.max_queue_size_reached,
                len(self._pending)
            )

            self._not_empty.set()
            logger.debug(f"Enqueued event: {event} (queue size: {len(self._pending)})")
            return True

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[MutationEvent]:
        """
        Remove and return the highest priority event.

        Args:
            timeout: Maximum seconds to wait for an event (None waits forever)

        Returns:
            The highest priority event, or None on timeout or stop
        """
        while True:
            async with self._queue_lock:
                event = self._pop_valid_event()
                if event is not None:
                    return event
                self._not_empty.clear()

            if not self._running:
                return None

            try:
                if timeout is None:
                    await self._not_empty.wait()
                else:
                    await asyncio.wait_for(self._not_empty.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                return None

    def _pop_valid_event(self) -> Optional[MutationEvent]:
        """
        Pop the highest priority live event from the queue.

        Must be called with _queue_lock held.
        """
        while self._queue:
            event = heapq.heappop(self._queue)

            if event.event_id in self._superseded:
                self._superseded.discard(event.event_id)
                continue

            if self._pending.get(event.dedupe_key) is event:
                del self._pending[event.dedupe_key]
            self.metrics.current_queue_size = len(self._pending)

            if event.is_expired(self.max_event_age_minutes):
                logger.debug(f"Expired event dropped: {event}")
                self.metrics.total_events_expired += 1
                continue

            self.metrics.total_events_dequeued += 1
            total_events = self.metrics.total_events_dequeued
            self.metrics.avg_wait_time_seconds = (
                (self.metrics.avg_wait_time_seconds * (total_events - 1) + event.age_seconds) / total_events
            )
            return event

        return None

    async def size(self) -> int:
        """Get current number of pending events"""
        async with self._queue_lock:
            return len(self._pending)

    async def is_empty(self) -> bool:
        """Check if queue is empty"""
        return await self.size() == 0

    async def clear(self) -> int:
        """Clear all events from queue and return count cleared"""
        async with self._queue_lock:
            count = len(self._pending)
            self._queue.clear()
            self._pending.clear()
            self._superseded.clear()
            self.metrics.current_queue_size = 0
            logger.info(f"Cleared {count} events from queue")
            return count

    def get_metrics(self) -> Dict[str, Any]:
        """Get comprehensive queue metrics"""
        uptime = (datetime.now() - self._start_time).total_seconds()

        return {
            "current_size": self.metrics.current_queue_size,
            "max_size_reached": self.metrics.max_queue_size_reached,
            "events_enqueued": self.metrics.total_events_enqueued,
            "events_dequeued": self.metrics.total_events_dequeued,
            "events_expired": self.metrics.total_events_expired,
            "events_deduplicated": self.metrics.total_events_deduplicated,
            "events_by_priority": {p.name: c for p, c in self.metrics.events_by_priority.items()},
            "events_by_kind": {k.value: c for k, c in self.metrics.events_by_kind.items()},
            "avg_wait_time_seconds": self.metrics.avg_wait_time_seconds,
            "uptime_seconds": uptime,
            "queue_utilization": self.metrics.current_queue_size / self.max_queue_size
        }

    def __len__(self) -> int:
        """Get current queue size (sync version)"""
        return len(self._pending)

    async def __aenter__(self):
        """Async context manager entry"""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.stop()
