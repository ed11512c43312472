"""Application configuration loaded from environment variables."""

from typing import List, Optional

from pydantic_settings import BaseSettings

from replisync.sync.entry import BatchConfig
from replisync.sync.mapping import MappingConfig, load_mapping_config


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./replisync.db"

    # Empty means "generate one on first init and keep it in _sync_state"
    ORIGIN_ID: str = ""

    ENVIRONMENT: str = "development"

    CORS_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://localhost:5174",
    ]

    API_V1_PREFIX: str = "/api/v1"

    # Batching
    SYNC_BATCH_SIZE: int = 1000
    SYNC_MAX_BATCH_SIZE: int = 10000
    SYNC_MAX_RETRY_PASSES: int = 3

    # JSON table/column mapping for SyncCoordinator; empty syncs tables unchanged
    SYNC_MAPPING_FILE: str = ""

    # Subscriptions (SSE)
    SUBSCRIPTION_QUEUE_CAPACITY: int = 1000
    SUBSCRIPTION_TTL_SECONDS: int = 3600
    SUBSCRIPTION_SWEEP_INTERVAL_SECONDS: int = 300
    SSE_KEEPALIVE_SECONDS: float = 15.0

    # Tombstones
    CLIENT_INACTIVITY_DAYS: int = 90

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    def batch_config(self) -> BatchConfig:
        return BatchConfig(
            batch_size=self.SYNC_BATCH_SIZE,
            max_retry_passes=self.SYNC_MAX_RETRY_PASSES,
        )

    def mapping_config(self) -> Optional[MappingConfig]:
        if not self.SYNC_MAPPING_FILE:
            return None
        return load_mapping_config(self.SYNC_MAPPING_FILE)


settings = Settings()
