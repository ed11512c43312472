"""Hub-side sync — pull assembly, push apply and relay, client tracking.

Push semantics:
  - Entries are applied under capture suppression in version order.
  - Foreign-key failures are deferred and retried; other storage
    rejections fail the single entry.
  - Every applied entry is appended to the hub's own log with its origin
    preserved, so other replicas pull it and the pusher skips it as an echo.
  - Subscribers are notified with the relayed entry after commit.
"""

import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from replisync.core.config import settings
from replisync.models.sync_event import SyncEvent
from replisync.storage.clients import SqlClientRepository
from replisync.storage.log_store import SqlChangeLogStore
from replisync.storage.replica import SqlReplicaStore
from replisync.storage.triggers import track_table, tracked_tables
from replisync.sync.batches import fetch_batch
from replisync.sync.contracts import ChangeSink, ChangeSource, PushResponse, Snapshot
from replisync.sync.coordinator import apply_with_retry
from replisync.sync.entry import SyncBatch, SyncClient, SyncLogEntry, utc_now
from replisync.sync.errors import InvalidInput, StorageError, SyncError
from replisync.sync.hashing import compute_database_hash
from replisync.sync.subscriptions import SubscriptionHub
from replisync.sync.tombstones import ensure_incremental, update_client_sync_state

logger = logging.getLogger(__name__)


class SyncService:
    def replica(self, db: Session) -> SqlReplicaStore:
        return SqlReplicaStore(db, settings.ORIGIN_ID or None)

    # -- setup --------------------------------------------------------------

    def initialize(self, db: Session, origin_id: Optional[str] = None,
                   tables: Iterable[str] = ()) -> Dict[str, Any]:
        replica = SqlReplicaStore(db, origin_id or settings.ORIGIN_ID or None)
        for table_name in tables:
            track_table(db, table_name)
        replica.commit()
        return {"originId": replica.origin_id, "tables": tracked_tables(db)}

    def get_state(self, db: Session) -> Dict[str, Any]:
        replica = self.replica(db)
        log = replica.log
        return {
            "originId": replica.origin_id,
            "currentVersion": log.max_version(),
            "oldestAvailableVersion": log.retention_floor(),
            "logEntries": log.count(),
            "clients": len(SqlClientRepository(db).all()),
            "trackedTables": tracked_tables(db),
        }

    # -- pull ---------------------------------------------------------------

    def build_pull(self, db: Session, from_version: int, batch_size: Optional[int] = None,
                   origin_id: Optional[str] = None) -> SyncBatch:
        started = time.monotonic()
        batch_size = batch_size or settings.SYNC_BATCH_SIZE
        log = SqlChangeLogStore(db)

        try:
            if batch_size > settings.SYNC_MAX_BATCH_SIZE:
                raise InvalidInput(
                    f"batchSize {batch_size} exceeds the maximum of {settings.SYNC_MAX_BATCH_SIZE}"
                )
            ensure_incremental(from_version, log.retention_floor())
            batch = fetch_batch(from_version, batch_size, log.fetch_changes)
            if origin_id:
                self.register_client(db, origin_id, from_version, commit=False)
        except SyncError as exc:
            db.rollback()
            self._record_event(db, origin_id, "pull", started, status="failed",
                               error_message=exc.message, version_before=from_version)
            raise

        self._record_event(
            db, origin_id, "pull", started,
            entity_counts={"changes": len(batch.changes)},
            version_before=batch.from_version,
            version_after=batch.to_version,
        )
        return batch

    # -- push ---------------------------------------------------------------

    def apply_push(self, db: Session, origin_id: str, changes: List[SyncLogEntry],
                   hub: Optional[SubscriptionHub] = None) -> PushResponse:
        if not origin_id:
            raise InvalidInput("originId is required")

        started = time.monotonic()
        replica = self.replica(db)
        version_before = replica.log.max_version()
        rejected: List[SyncLogEntry] = []
        relayed: List[SyncLogEntry] = []

        def attempt(entry: SyncLogEntry) -> bool:
            if entry.origin == replica.origin_id:
                return False
            try:
                replica.apply_change(entry)
            except (StorageError, InvalidInput) as exc:
                logger.warning("Rejected %s from %s: %s", entry.entry_id, origin_id, exc)
                rejected.append(entry)
                return False
            relayed.append(replica.log.append(entry))
            return True

        try:
            with replica.suppressed():
                outcome = apply_with_retry(changes, attempt, settings.SYNC_MAX_RETRY_PASSES)
        except SyncError as exc:
            self._record_event(db, origin_id, "push", started, status="failed",
                               error_message=exc.message, version_before=version_before)
            raise

        failed = sorted(outcome.deferred + rejected, key=lambda e: e.version)
        if outcome.deferred:
            logger.warning(
                "%d change(s) from %s still failing after %d retry pass(es)",
                len(outcome.deferred), origin_id, outcome.retry_passes,
            )

        self._record_event(
            db, origin_id, "push", started,
            status="partial" if failed else "completed",
            entity_counts={
                "received": len(changes),
                "applied": len(outcome.applied),
                "failed": len(failed),
            },
            version_before=version_before,
            version_after=replica.log.max_version(),
        )

        if hub is not None:
            for entry in relayed:
                hub.notify_change(entry)

        return PushResponse(applied=len(outcome.applied), failed=[e.entry_id for e in failed])

    # -- clients ------------------------------------------------------------

    def register_client(self, db: Session, origin_id: str, last_sync_version: int = 0,
                        commit: bool = True) -> SyncClient:
        if not origin_id:
            raise InvalidInput("originId is required")
        repo = SqlClientRepository(db)
        client = repo.save(update_client_sync_state(
            origin_id, last_sync_version, utc_now(), repo.get(origin_id)
        ))
        if commit:
            db.commit()
        return client

    def list_clients(self, db: Session) -> List[SyncClient]:
        return SqlClientRepository(db).all()

    # -- verification / bootstrap -------------------------------------------

    def database_hash(self, db: Session, tables: Optional[Iterable[str]] = None) -> str:
        replica = self.replica(db)
        table_names = list(tables) if tables else tracked_tables(db)
        return compute_database_hash(table_names, replica.applier.rows)

    def build_snapshot(self, db: Session, tables: Optional[Iterable[str]] = None) -> Snapshot:
        replica = self.replica(db)
        table_names = list(tables) if tables else tracked_tables(db)
        version = replica.log.max_version()
        return Snapshot(
            version=version,
            tables={t: replica.applier.rows(t) for t in table_names},
            primary_keys={t: replica.applier.primary_key_columns(t) for t in table_names},
        )

    def recent_events(self, db: Session, limit: int = 50) -> List[SyncEvent]:
        return (
            db.query(SyncEvent)
            .order_by(SyncEvent.id.desc())
            .limit(limit)
            .all()
        )

    # -- helpers ------------------------------------------------------------

    def _record_event(self, db: Session, origin_id: Optional[str], direction: str,
                      started: float, status: str = "completed", **fields) -> None:
        db.add(SyncEvent(
            origin_id=origin_id,
            direction=direction,
            status=status,
            duration_ms=int((time.monotonic() - started) * 1000),
            created_at=utc_now(),
            **fields,
        ))
        db.commit()


sync_service = SyncService()


# ---------------------------------------------------------------------------
# In-process remote
# ---------------------------------------------------------------------------

class HubChangeSource(ChangeSource):
    """Pull straight from a hub database, registering the puller as a client."""

    def __init__(self, session_factory: Callable[[], Session], origin_id: Optional[str] = None,
                 service: SyncService = sync_service):
        self.session_factory = session_factory
        self.origin_id = origin_id
        self.service = service

    def fetch_batch(self, from_version: int, batch_size: int) -> SyncBatch:
        with self.session_factory() as db:
            return self.service.build_pull(db, from_version, batch_size, self.origin_id)

    def fetch_snapshot(self, tables: Optional[Iterable[str]] = None) -> Snapshot:
        with self.session_factory() as db:
            return self.service.build_snapshot(db, tables)


class HubChangeSink(ChangeSink):
    def __init__(self, session_factory: Callable[[], Session], service: SyncService = sync_service,
                 hub: Optional[SubscriptionHub] = None):
        self.session_factory = session_factory
        self.service = service
        self.hub = hub

    def send(self, origin_id: str, changes: List[SyncLogEntry]) -> PushResponse:
        with self.session_factory() as db:
            return self.service.apply_push(db, origin_id, changes, self.hub)
