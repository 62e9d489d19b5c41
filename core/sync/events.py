"""
Mutation Event Models.

Defines the closed set of entity mutation events that drive incremental
search index updates, with their priorities and processing state.
"""

from datetime import datetime
from enum import Enum, IntEnum
from typing import Optional, Dict, Any, Tuple
from pydantic import BaseModel, Field, field_validator
import uuid

from ..exceptions import UnsupportedEventError
from ..storage.schemas import EntityType


class MutationType(Enum):
    """Kinds of source record mutation"""
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class EntityKind(Enum):
    """Entities whose mutations are observed"""
    PRODUCT = "product"
    VARIANT = "product-variant"
    CUSTOMER = "customer"
    INVENTORY_LEVEL = "inventory.inventory-level"

    @property
    def entity_type(self) -> EntityType:
        """Indexed entity type the mutation lands in"""
        if self in (EntityKind.PRODUCT, EntityKind.VARIANT):
            return EntityType.PRODUCTS
        if self == EntityKind.CUSTOMER:
            return EntityType.CUSTOMERS
        return EntityType.INVENTORY


class EventPriority(IntEnum):
    """
    Priority levels for event processing.

    Lower numeric values = higher priority.
    Deletions go first so removed records disappear from search quickly.
    """
    CRITICAL = 1   # Deletions
    HIGH = 2       # Updates
    MEDIUM = 3     # Creations


PRIORITY_BY_MUTATION = {
    MutationType.DELETED: EventPriority.CRITICAL,
    MutationType.UPDATED: EventPriority.HIGH,
    MutationType.CREATED: EventPriority.MEDIUM,
}


def parse_event_name(event_name: str) -> Tuple[EntityKind, MutationType]:
    """
    Split an event name such as ``product-variant.updated`` into its parts.

    Raises:
        UnsupportedEventError: Name is outside the observed event set
    """
    prefix, _, suffix = event_name.strip().rpartition(".")
    try:
        kind = EntityKind(prefix)
        mutation = MutationType(suffix)
    except ValueError:
        raise UnsupportedEventError(f"Unsupported event: {event_name}")
    return kind, mutation


class MutationEvent(BaseModel):
    """
    One entity mutation notification.

    Carries only identity; the record itself is always re-read from the
    source of truth when the event is processed.
    """

    # Event identification
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: EntityKind
    mutation: MutationType
    entity_id: str

    # Timing and priority
    timestamp: datetime = Field(default_factory=datetime.now)
    priority: EventPriority = EventPriority.HIGH

    # Processing state
    processed: bool = False
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None

    # Error handling
    retry_count: int = 0
    max_retries: int = 3
    last_error: Optional[str] = None

    @field_validator('entity_id')
    @classmethod
    def validate_entity_id(cls, v: str) -> str:
        """Ensure entity id is present"""
        if not v or not v.strip():
            raise ValueError('Entity id cannot be empty')
        return v.strip()

    @classmethod
    def create(cls, kind: EntityKind, mutation: MutationType, entity_id: str, **kwargs) -> 'MutationEvent':
        """Create an event with the mutation's priority"""
        return cls(
            kind=kind,
            mutation=mutation,
            entity_id=entity_id,
            priority=PRIORITY_BY_MUTATION[mutation],
            **kwargs
        )

    @classmethod
    def from_name(cls, event_name: str, entity_id: str, **kwargs) -> 'MutationEvent':
        """Create an event from its wire name, e.g. ``customer.updated``"""
        kind, mutation = parse_event_name(event_name)
        return cls.create(kind, mutation, entity_id, **kwargs)

    @property
    def name(self) -> str:
        """Wire name of the event"""
        return f"{self.kind.value}.{self.mutation.value}"

    @property
    def entity_type(self) -> EntityType:
        return self.kind.entity_type

    @property
    def is_deletion(self) -> bool:
        return self.mutation == MutationType.DELETED

    @property
    def dedupe_key(self) -> Tuple[str, str]:
        """Pending events for the same entity collapse into one"""
        return (self.kind.value, self.entity_id)

    def mark_processing_started(self) -> None:
        """Mark event as started processing"""
        self.processing_started_at = datetime.now()

    def mark_processing_completed(self) -> None:
        """Mark event as completed processing"""
        self.processing_completed_at = datetime.now()
        self.processed = True

    def mark_processing_failed(self, error: str) -> None:
        """Mark event processing as failed with error"""
        self.retry_count += 1
        self.last_error = error
        self.processing_completed_at = datetime.now()

    def can_retry(self) -> bool:
        """Check if event can be retried"""
        return self.retry_count < self.max_retries

    def is_expired(self, max_age_minutes: int = 60) -> bool:
        """Check if event is too old to process"""
        age = datetime.now() - self.timestamp
        return age.total_seconds() > (max_age_minutes * 60)

    @property
    def processing_duration(self) -> Optional[float]:
        """Get processing duration in seconds"""
        if self.processing_started_at and self.processing_completed_at:
            delta = self.processing_completed_at - self.processing_started_at
            return delta.total_seconds()
        return None

    @property
    def age_seconds(self) -> float:
        """Get event age in seconds"""
        return (datetime.now() - self.timestamp).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization"""
        return {
            "event_id": self.event_id,
            "name": self.name,
            "entity_id": self.entity_id,
            "timestamp": self.timestamp.isoformat(),
            "priority": self.priority.value,
            "processed": self.processed,
            "retry_count": self.retry_count,
            "age_seconds": self.age_seconds,
            "processing_duration": self.processing_duration,
            "last_error": self.last_error
        }

    def __str__(self) -> str:
        """String representation for logging"""
        return f"{self.name}: {self.entity_id} [P{self.priority.value}]"

    def __lt__(self, other: 'MutationEvent') -> bool:
        """Compare events for priority queue ordering (lower priority value = higher priority)"""
        if not isinstance(other, MutationEvent):
            return NotImplemented

        if self.priority != other.priority:
            return self.priority < other.priority

        # Older events first within same priority
        return self.timestamp < other.timestamp
