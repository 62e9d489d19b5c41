"""
Storage utilities for consistent operations across the codebase.

Provides centralized helpers for document ID to Qdrant point ID conversion
and payload timestamp stamping.
"""

import hashlib
import time


def document_id_to_point_id(document_id: str) -> int:
    """
    Convert a search document ID to a Qdrant point ID using SHA256 hashing.

    Qdrant only accepts unsigned integers or UUIDs as point IDs, while source
    records use prefixed string keys. This is the canonical conversion; the
    original ID is always kept in the payload ``id`` field.

    Args:
        document_id: Document identifier (e.g., "prod_01HX...")

    Returns:
        Integer point ID for Qdrant storage

    Example:
        >>> document_id_to_point_id("prod_01") == document_id_to_point_id("prod_01")
        True
    """
    hash_digest = hashlib.sha256(document_id.encode('utf-8')).digest()
    return int.from_bytes(hash_digest[:8], byteorder='big', signed=False)


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds"""
    return int(time.time() * 1000)
