"""Retention rules for the change log.

A log entry may only be purged once every known client has synced past
it. A client whose cursor falls below the oldest retained version can no
longer catch up incrementally and must re-baseline.
"""

from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from replisync.sync.entry import SyncClient, utc_now
from replisync.sync.errors import FullResyncRequired

DEFAULT_INACTIVITY_THRESHOLD = timedelta(days=90)


def calculate_safe_purge_version(clients: Iterable[SyncClient]) -> Optional[int]:
    """Highest version that is safe to purge, or None when there are no clients."""
    versions = [c.last_sync_version for c in clients]
    if not versions:
        return None
    return min(versions)


def requires_full_resync(client_last_version: int, oldest_available_version: int) -> bool:
    return client_last_version < oldest_available_version


def ensure_incremental(client_last_version: int, oldest_available_version: int) -> None:
    if requires_full_resync(client_last_version, oldest_available_version):
        raise FullResyncRequired(client_last_version, oldest_available_version)


def find_stale_clients(
    clients: Iterable[SyncClient],
    now: Optional[datetime] = None,
    inactivity_threshold: timedelta = DEFAULT_INACTIVITY_THRESHOLD,
) -> List[str]:
    """Origin IDs of clients that have not synced within the threshold."""
    now = now or utc_now()
    return [
        c.origin_id for c in clients
        if now - c.last_sync_timestamp > inactivity_threshold
    ]


def update_client_sync_state(
    origin_id: str,
    version: int,
    now: Optional[datetime] = None,
    existing: Optional[SyncClient] = None,
) -> SyncClient:
    now = now or utc_now()
    return SyncClient(
        origin_id=origin_id,
        last_sync_version=version,
        last_sync_timestamp=now,
        created_at=existing.created_at if existing else now,
    )
