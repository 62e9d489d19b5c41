"""
Storage models for search index writes and operation results.

Handles write task handles, index points and operation tracking.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator


class TaskState(Enum):
    """Durability state of an index write"""
    ENQUEUED = "enqueued"      # Accepted by the index, not yet applied
    COMPLETED = "completed"    # Applied and visible to readers


class TaskHandle(BaseModel):
    """
    Handle for one write issued to the search index.

    Writers return a handle for every write; callers that need read-after-write
    consistency pass it to ``wait_for`` before returning control.
    """
    model_config = ConfigDict(frozen=True)

    collection_name: str
    operation: str  # upsert, delete, delete_all, replace_all
    operation_id: Optional[int] = None
    state: TaskState = TaskState.ENQUEUED
    document_count: int = 0
    issued_at: datetime = Field(default_factory=datetime.now)

    @field_validator('operation')
    @classmethod
    def validate_operation(cls, v: str) -> str:
        """Validate operation type"""
        valid_ops = {'upsert', 'delete', 'delete_all', 'replace_all', 'noop'}
        if v.lower() not in valid_ops:
            raise ValueError(f'Invalid operation: {v}')
        return v.lower()

    @property
    def is_completed(self) -> bool:
        """Check if the write is already durable"""
        return self.state == TaskState.COMPLETED

    @classmethod
    def completed_noop(cls, collection_name: str) -> 'TaskHandle':
        """Handle for a write that had nothing to do"""
        return cls(
            collection_name=collection_name,
            operation='noop',
            state=TaskState.COMPLETED,
        )


class IndexPoint(BaseModel):
    """Payload-only Qdrant point holding one search document"""
    model_config = ConfigDict(frozen=True)

    id: int
    payload: Dict[str, Any]

    @field_validator('payload')
    @classmethod
    def validate_payload(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        """Validate payload is a flat document keyed by id"""
        if not v.get('id'):
            raise ValueError('Payload missing document id')
        for key, value in v.items():
            if isinstance(value, dict):
                raise ValueError(f'Payload field {key} must not be a nested object')
            if isinstance(value, list) and any(isinstance(item, (dict, list)) for item in value):
                raise ValueError(f'Payload field {key} must be a flat array')
        return v

    @property
    def document_id(self) -> str:
        """Get source document ID from payload"""
        return self.payload['id']


class StorageResult(BaseModel):
    """Result of storage operations with detailed metrics"""

    # Operation details
    operation: str
    collection_name: str
    success: bool

    # Performance metrics
    processing_time_ms: float
    affected_count: int = 0
    total_count: int = 0

    # Error handling
    error: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)

    # Timestamps
    started_at: datetime = Field(default_factory=datetime.now)

    @classmethod
    def successful_configure(
        cls,
        collection_name: str,
        created_indexes: int,
        processing_time_ms: float
    ) -> 'StorageResult':
        """Create successful schema configuration result"""
        return cls(
            operation="configure_schema",
            collection_name=collection_name,
            success=True,
            processing_time_ms=processing_time_ms,
            affected_count=created_indexes,
            total_count=created_indexes
        )


class CollectionInfo(BaseModel):
    """Information about a search index collection"""
    model_config = ConfigDict(frozen=True)

    name: str
    points_count: int
    status: str
    indexed_fields: List[str] = Field(default_factory=list)

    @property
    def is_ready(self) -> bool:
        """Check if collection is ready for operations"""
        return self.status.lower() in {'green', 'ready', 'active'}
