"""A SQL database acting as a sync replica."""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy.orm import Session

from replisync.models.sync_state import SyncMappingState
from replisync.storage import state
from replisync.storage.applier import SqlChangeApplier
from replisync.storage.log_store import SqlChangeLogStore
from replisync.storage.state import storage_errors
from replisync.sync.contracts import LAST_PUSH_VERSION, ReplicaStore
from replisync.sync.entry import SyncLogEntry
from replisync.sync.mapping import MappingDirection, MappingState

logger = logging.getLogger(__name__)


class SqlReplicaStore(ReplicaStore):
    """Replica backed by one SQLAlchemy session.

    Cursors, applied rows and the suppression flag share the session's
    transaction, so a commit persists applied changes and the cursor
    together. Construction seeds and commits the sync state rows.
    """

    def __init__(self, db: Session, origin_id: Optional[str] = None):
        self.db = db
        self.log = SqlChangeLogStore(db)
        self.applier = SqlChangeApplier(db)
        self._suppressing = False
        self._origin_id = state.ensure_sync_state(db, origin_id)
        self.commit()

    @property
    def origin_id(self) -> str:
        return self._origin_id

    # -- cursors ------------------------------------------------------------

    def get_cursor(self, name: str) -> int:
        return state.get_int(self.db, name)

    def set_cursor(self, name: str, version: int) -> None:
        state.set_value(self.db, name, int(version))

    # -- capture suppression ------------------------------------------------

    @contextmanager
    def suppressed(self) -> Iterator[None]:
        """Silence capture triggers for the session's writes.

        The flag lives in the open transaction only: ``commit`` clears it
        before committing and sets it again afterwards, so a crash never
        leaves capture switched off on disk.
        """
        state.set_sync_active(self.db, True)
        self._suppressing = True
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        finally:
            self._suppressing = False
            state.set_sync_active(self.db, False)
            self.commit()

    def is_suppressed(self) -> bool:
        return state.is_sync_active(self.db)

    # -- applying -----------------------------------------------------------

    def apply_change(self, entry: SyncLogEntry) -> None:
        self.applier.apply_change(entry)

    def pending_local_change(self, table_name: str, pk_value: Dict[str, Any]) -> Optional[SyncLogEntry]:
        unpushed = self.log.changes_for_row(
            table_name, pk_value, after_version=self.get_cursor(LAST_PUSH_VERSION)
        )
        local = [e for e in unpushed if e.origin == self.origin_id]
        return local[-1] if local else None

    def discard_local_changes(self, table_name: str, pk_value: Dict[str, Any]) -> int:
        unpushed = self.log.changes_for_row(
            table_name, pk_value, after_version=self.get_cursor(LAST_PUSH_VERSION)
        )
        versions = [e.version for e in unpushed if e.origin == self.origin_id]
        discarded = self.log.delete_versions(versions)
        if discarded:
            logger.info(
                "Discarded %d superseded local change(s) to %s %s",
                discarded, table_name, pk_value,
            )
        return discarded

    def row_keys(self, table_name: str) -> List[Dict[str, Any]]:
        return self.applier.row_keys(table_name)

    # -- mapping progress ---------------------------------------------------

    def mapping_state(self, mapping_id: str, direction: MappingDirection) -> MappingState:
        with storage_errors(f"reading mapping state {mapping_id}"):
            row = self.db.get(SyncMappingState, (mapping_id, direction.value))
        if row is None:
            return MappingState(mapping_id, direction)
        return MappingState(
            mapping_id=mapping_id,
            direction=direction,
            last_synced_version=row.last_synced_version,
            last_sync_timestamp=row.last_sync_timestamp,
            records_synced=row.records_synced,
        )

    def save_mapping_state(self, mapping_state: MappingState) -> None:
        key = (mapping_state.mapping_id, mapping_state.direction.value)
        with storage_errors(f"writing mapping state {mapping_state.mapping_id}"):
            row = self.db.get(SyncMappingState, key)
            if row is None:
                row = SyncMappingState(mapping_id=key[0], direction=key[1])
                self.db.add(row)
            row.last_synced_version = mapping_state.last_synced_version
            row.last_sync_timestamp = mapping_state.last_sync_timestamp
            row.records_synced = mapping_state.records_synced
            self.db.flush()

    # -- transaction --------------------------------------------------------

    def commit(self) -> None:
        if self._suppressing:
            state.set_sync_active(self.db, False)
        with storage_errors("committing"):
            self.db.commit()
        if self._suppressing:
            state.set_sync_active(self.db, True)

    def rollback(self) -> None:
        self.db.rollback()
        if self._suppressing:
            state.set_sync_active(self.db, True)
