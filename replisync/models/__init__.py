"""SQLAlchemy models for the sync bookkeeping tables."""

from .sync_log import SyncLog
from .sync_state import SyncMappingState, SyncSessionFlag, SyncState
from .sync_client import SyncClientRecord
from .sync_event import SyncEvent

__all__ = [
    "SyncLog",
    "SyncState",
    "SyncSessionFlag",
    "SyncMappingState",
    "SyncClientRecord",
    "SyncEvent",
]
