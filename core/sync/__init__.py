"""
Search Index Synchronization System.

Keeps the search index collections consistent with the source of truth.

Key Components:
- MutationEvent: Event model for source record mutations
- PriorityMutationQueue: Asynchronous event buffering with priorities
- SyncEngine: Workers applying events with retry and backoff
- IncrementalUpsertWorkflow: Single-document updates driven by one event
- FullResyncWorkflow: Batched rebuild of a whole entity type
- SyncLockRegistry: At most one full resync per entity type
"""

from .events import MutationEvent, MutationType, EntityKind, EventPriority, parse_event_name
from .queue import PriorityMutationQueue
from .lock import SyncLockRegistry, sync_locks
from .incremental import IncrementalUpsertWorkflow, IncrementalResult
from .full_resync import FullResyncWorkflow, ResyncResult, ResyncProgress, ResyncState
from .engine import SyncEngine, SyncEngineMetrics, RetryConfig

__all__ = [
    "MutationEvent",
    "MutationType",
    "EntityKind",
    "EventPriority",
    "parse_event_name",
    "PriorityMutationQueue",
    "SyncLockRegistry",
    "sync_locks",
    "IncrementalUpsertWorkflow",
    "IncrementalResult",
    "FullResyncWorkflow",
    "ResyncResult",
    "ResyncProgress",
    "ResyncState",
    "SyncEngine",
    "SyncEngineMetrics",
    "RetryConfig",
]
