"""
Error taxonomy for catalog search synchronization.

Transient errors are raised out of workflows so the hosting retry mechanism
can re-attempt them. Not-found conditions are never raised; workflows report
them as successful skips.
"""


class SyncError(Exception):
    """Base class for synchronization errors"""
    pass


class TransientSyncError(SyncError):
    """Temporary I/O failure that is worth retrying"""
    pass


class IndexUnavailableError(TransientSyncError):
    """Search index unreachable or rejected the request"""
    pass


class IndexTimeoutError(TransientSyncError):
    """Search index did not confirm a write within the polling budget"""
    pass


class SourceUnavailableError(TransientSyncError):
    """Source of truth unreachable or returned an unexpected response"""
    pass


class UnknownEntityError(SyncError, ValueError):
    """Entity type is not one of the indexed entity types"""
    pass


class UnsupportedEventError(SyncError, ValueError):
    """Mutation event name does not map to a known entity/mutation pair"""
    pass
