"""
Configuration models for catalog-search-sync.

Handles search index connection, source-of-truth access, sync batching,
scheduler and event engine settings.
"""

from pathlib import Path
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SearchIndexConfig(BaseModel):
    """Qdrant search index configuration"""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True
    )

    # Connection settings
    url: str = "http://localhost:6333"
    api_key: Optional[str] = None
    timeout: float = 30.0

    # Collection settings
    collection_prefix: Optional[str] = None

    # Write confirmation polling
    poll_interval_seconds: float = Field(default=0.05, gt=0.0, le=10.0)
    max_poll_attempts: int = Field(default=200, ge=1)

    # Scroll page size for index reads
    scroll_page_size: int = Field(default=1000, ge=1, le=10000)

    @field_validator('url')
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Qdrant URL format"""
        if v == ":memory:":
            return v
        if not v.startswith(('http://', 'https://')):
            raise ValueError('Search index URL must start with http:// or https://')
        return v.rstrip('/')

    @field_validator('collection_prefix')
    @classmethod
    def validate_collection_prefix(cls, v: Optional[str]) -> Optional[str]:
        """Validate collection prefix"""
        if v is None or v == "":
            return None
        if not v.replace('-', '').replace('_', '').isalnum():
            raise ValueError('Collection prefix must be alphanumeric with dashes/underscores')
        return v.lower()


class SourceConfig(BaseModel):
    """Source-of-truth access configuration"""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True
    )

    backend: str = "fixture"  # fixture, medusa

    # Medusa admin API
    url: str = "http://localhost:9000"
    api_key: Optional[str] = None
    timeout: float = Field(default=30.0, ge=1.0, le=300.0)
    page_size: int = Field(default=100, ge=1, le=1000)

    # Fixture files
    fixture_path: Optional[Path] = None

    @field_validator('backend')
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate source backend"""
        valid_backends = {'fixture', 'medusa'}
        if v.lower() not in valid_backends:
            raise ValueError(f'Source backend must be one of: {valid_backends}')
        return v.lower()

    @field_validator('url')
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate source URL format"""
        if not v.startswith(('http://', 'https://')):
            raise ValueError('Source URL must start with http:// or https://')
        return v.rstrip('/')


class SyncConfig(BaseModel):
    """Full resync and drift detection settings"""
    model_config = ConfigDict(validate_assignment=True)

    batch_size: int = Field(default=2500, ge=1, le=10000)
    yield_ms: int = Field(default=20, ge=0, le=10000)
    tolerance_ms: int = Field(default=2000, ge=0)
    category_depth: int = Field(default=3, ge=1, le=10)
    sweep_chunk_size: int = Field(default=500, ge=1, le=10000)

    @property
    def yield_seconds(self) -> float:
        """Pause between batches in seconds"""
        return self.yield_ms / 1000.0


class SchedulerConfig(BaseModel):
    """Recurring reconciliation settings"""
    model_config = ConfigDict(validate_assignment=True)

    enabled: bool = True
    interval_minutes: float = Field(default=5.0, gt=0.0)
    initial_delay_seconds: float = Field(default=30.0, ge=0.0)
    max_retries: int = Field(default=3, ge=0)
    retry_delay_seconds: float = Field(default=30.0, ge=0.0)
    max_execution_time_minutes: float = Field(default=15.0, gt=0.0)
    wait_for_writes: bool = False


class EngineConfig(BaseModel):
    """Mutation event engine settings"""
    model_config = ConfigDict(validate_assignment=True)

    worker_count: int = Field(default=2, ge=1, le=32)
    max_queue_size: int = Field(default=10000, ge=1)
    max_failed_events: int = Field(default=100, ge=1)
    max_retries: int = Field(default=3, ge=0)
    initial_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=30.0, ge=0.0)
    exponential_base: float = Field(default=2.0, ge=1.0)
    jitter: bool = True

    @model_validator(mode='after')
    def validate_delays(self) -> 'EngineConfig':
        """Max delay must not undercut the initial delay"""
        if self.max_delay < self.initial_delay:
            raise ValueError('max_delay must be greater than or equal to initial_delay')
        return self


class SyncServiceConfig(BaseModel):
    """Top-level service configuration with validation"""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True
    )

    name: str = "catalog-search-sync"

    # Component configurations
    search_index: SearchIndexConfig = Field(default_factory=SearchIndexConfig)
    source: SourceConfig = Field(default_factory=SourceConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        data = self.model_dump()
        if data['source'].get('fixture_path') is not None:
            data['source']['fixture_path'] = str(data['source']['fixture_path'])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncServiceConfig':
        """Create from dictionary"""
        return cls.model_validate(data)


class GlobalSettings(BaseSettings):
    """Global application settings with environment variable support"""
    model_config = SettingsConfigDict(
        env_prefix="CATALOG_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Config file location
    config_file: Optional[Path] = None
    global_config_dir: Path = Field(
        default_factory=lambda: Path.home() / ".catalog-search-sync"
    )

    # Logging
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    log_to_file: bool = False

    def get_log_file(self) -> Optional[Path]:
        """Get log file path if logging to file is enabled"""
        if not self.log_to_file:
            return None
        log_dir = self.global_config_dir / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir / "catalog-search-sync.log"

    def resolve_config_file(self) -> Path:
        """Explicit config file, else the one in the global config directory"""
        if self.config_file is not None:
            return self.config_file
        return self.global_config_dir / "config.json"
