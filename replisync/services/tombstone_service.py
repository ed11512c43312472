"""Change-log retention: reporting and safe purging."""

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from replisync.core.config import settings
from replisync.models.sync_event import SyncEvent
from replisync.storage.clients import SqlClientRepository
from replisync.storage.log_store import SqlChangeLogStore
from replisync.sync.entry import utc_now
from replisync.sync.tombstones import calculate_safe_purge_version, find_stale_clients

logger = logging.getLogger(__name__)


class TombstoneService:
    def inactivity_threshold(self) -> timedelta:
        return timedelta(days=settings.CLIENT_INACTIVITY_DAYS)

    def report(self, db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
        log = SqlChangeLogStore(db)
        clients = SqlClientRepository(db).all()
        return {
            "currentVersion": log.max_version(),
            "oldestAvailableVersion": log.retention_floor(),
            "logEntries": log.count(),
            "safePurgeVersion": calculate_safe_purge_version(clients),
            "staleClients": find_stale_clients(clients, now, self.inactivity_threshold()),
        }

    def purge(self, db: Session, prune_stale_clients: bool = False,
              now: Optional[datetime] = None) -> Dict[str, Any]:
        """Purge every entry all known clients have already synced past.

        With ``prune_stale_clients`` the inactive clients are forgotten
        first, so they no longer hold retention back; they will need a
        full resync when they return.
        """
        started = time.monotonic()
        log = SqlChangeLogStore(db)
        repo = SqlClientRepository(db)
        clients = repo.all()

        stale = find_stale_clients(clients, now, self.inactivity_threshold())
        pruned = []
        if prune_stale_clients and stale:
            repo.delete(stale)
            pruned = stale
            clients = [c for c in clients if c.origin_id not in set(stale)]
            logger.info("Forgot %d stale client(s): %s", len(stale), ", ".join(stale))

        safe_version = calculate_safe_purge_version(clients)
        version_before = log.retention_floor()
        purged = 0
        if safe_version is None:
            logger.info("No registered clients; skipping purge")
        else:
            purged = log.purge_through(safe_version)

        db.add(SyncEvent(
            direction="purge",
            status="completed",
            entity_counts={"purged": purged, "prunedClients": len(pruned)},
            duration_ms=int((time.monotonic() - started) * 1000),
            version_before=version_before,
            version_after=log.retention_floor(),
            created_at=utc_now(),
        ))
        db.commit()

        return {
            "purged": purged,
            "safePurgeVersion": safe_version,
            "oldestAvailableVersion": log.retention_floor(),
            "prunedClients": pruned,
            "staleClients": [s for s in stale if s not in pruned],
        }


tombstone_service = TombstoneService()
