"""
Default configuration values for catalog-search-sync.

Centralized defaults that can be overridden by environment variables or config files.
"""

from pathlib import Path
from typing import Any, Dict
import copy

# Global default settings
DEFAULT_SETTINGS = {
    # Qdrant search index
    "search_index": {
        "url": "http://localhost:6333",
        "api_key": None,
        "timeout": 30.0,
        "collection_prefix": None,
        "poll_interval_seconds": 0.05,
        "max_poll_attempts": 200,
        "scroll_page_size": 1000
    },

    # Source of truth
    "source": {
        "backend": "fixture",
        "url": "http://localhost:9000",
        "api_key": None,
        "timeout": 30.0,
        "page_size": 100,
        "fixture_path": None
    },

    # Full resync and drift detection
    "sync": {
        "batch_size": 2500,
        "yield_ms": 20,
        "tolerance_ms": 2000,
        "category_depth": 3,
        "sweep_chunk_size": 500
    },

    # Recurring reconciliation
    "scheduler": {
        "enabled": True,
        "interval_minutes": 5.0,
        "initial_delay_seconds": 30.0,
        "max_retries": 3,
        "retry_delay_seconds": 30.0,
        "max_execution_time_minutes": 15.0,
        "wait_for_writes": False
    },

    # Mutation event engine
    "engine": {
        "worker_count": 2,
        "max_queue_size": 10000,
        "max_failed_events": 100,
        "max_retries": 3,
        "initial_delay": 1.0,
        "max_delay": 30.0,
        "exponential_base": 2.0,
        "jitter": True
    }
}

DEFAULT_CONFIG_DIR = Path.home() / ".catalog-search-sync"

# Environment variable mappings
ENV_VAR_MAPPING = {
    'QDRANT_URL': 'search_index.url',
    'QDRANT_API_KEY': 'search_index.api_key',
    'QDRANT_COLLECTION_PREFIX': 'search_index.collection_prefix',
    'MEDUSA_BACKEND_URL': 'source.url',
    'MEDUSA_API_KEY': 'source.api_key',
    'CATALOG_SYNC_SOURCE_BACKEND': 'source.backend',
    'CATALOG_SYNC_FIXTURE_PATH': 'source.fixture_path',
    'CATALOG_SYNC_BATCH_SIZE': 'sync.batch_size',
    'CATALOG_SYNC_TOLERANCE_MS': 'sync.tolerance_ms',
    'CATALOG_SYNC_INTERVAL_MINUTES': 'scheduler.interval_minutes',
    'CATALOG_SYNC_WORKERS': 'engine.worker_count'
}

# Values that must stay strings even when they look numeric or boolean
STRING_CONFIG_PATHS = {
    'search_index.url',
    'search_index.api_key',
    'search_index.collection_prefix',
    'source.url',
    'source.api_key',
    'source.backend',
    'source.fixture_path'
}


def get_default_config() -> Dict[str, Any]:
    """Get a fresh copy of the default service configuration"""
    config = copy.deepcopy(DEFAULT_SETTINGS)
    config['name'] = 'catalog-search-sync'
    return config
