"""
Per-entity sync locks.

Guarantees at most one full resync per entity type within this process. A
second request while one is running is a no-op, never queued. Locks live in
memory only; a restarted process starts with every lock released.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional

from ..storage.schemas import EntityType

logger = logging.getLogger(__name__)


class SyncLockRegistry:
    """
    One boolean lock per entity type.

    ``try_acquire`` checks and sets without awaiting in between, so it is
    atomic with respect to other coroutines on the same event loop.
    """

    def __init__(self):
        self._held: Dict[EntityType, bool] = {entity: False for entity in EntityType}
        self._acquired_at: Dict[EntityType, Optional[datetime]] = {entity: None for entity in EntityType}
        self.collisions = 0

    def try_acquire(self, entity_type: EntityType) -> bool:
        """Take the lock if free; returns whether it was taken"""
        if self._held[entity_type]:
            self.collisions += 1
            logger.info(f"Sync lock for {entity_type.value} already held")
            return False
        self._held[entity_type] = True
        self._acquired_at[entity_type] = datetime.now()
        logger.debug(f"Acquired sync lock for {entity_type.value}")
        return True

    def release(self, entity_type: EntityType) -> None:
        """Release the lock; releasing a free lock is a no-op"""
        if self._held[entity_type]:
            held_for = (datetime.now() - self._acquired_at[entity_type]).total_seconds()
            logger.debug(f"Released sync lock for {entity_type.value} after {held_for:.2f}s")
        self._held[entity_type] = False
        self._acquired_at[entity_type] = None

    def is_locked(self, entity_type: EntityType) -> bool:
        return self._held[entity_type]

    @asynccontextmanager
    async def holding(self, entity_type: EntityType) -> AsyncIterator[bool]:
        """
        Hold the lock for the duration of the block if it can be taken.

        Yields:
            True when this block owns the lock, False when another run does
        """
        acquired = self.try_acquire(entity_type)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(entity_type)

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        """Lock state per entity type"""
        return {
            entity.value: {
                "locked": self._held[entity],
                "acquired_at": self._acquired_at[entity].isoformat() if self._acquired_at[entity] else None
            }
            for entity in EntityType
        }


# Process-wide registry shared by every workflow instance
sync_locks = SyncLockRegistry()
