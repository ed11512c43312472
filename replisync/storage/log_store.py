"""_sync_log access."""

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func
from sqlalchemy.orm import Session

from replisync.models.sync_log import SyncLog
from replisync.storage import state
from replisync.storage.state import storage_errors
from replisync.sync.contracts import ChangeLogStore
from replisync.sync.entry import (
    SyncLogEntry,
    SyncOperation,
    format_timestamp,
    parse_timestamp,
)
from replisync.sync.errors import InvalidInput
from replisync.sync.hashing import to_canonical_json

logger = logging.getLogger(__name__)


def _row_to_entry(row: SyncLog) -> SyncLogEntry:
    return SyncLogEntry(
        version=int(row.version),
        table_name=row.table_name,
        pk_value=json.loads(row.pk_value),
        operation=SyncOperation.parse(row.operation),
        payload=json.loads(row.payload) if row.payload is not None else None,
        origin=row.origin,
        timestamp=parse_timestamp(row.timestamp),
    )


class SqlChangeLogStore(ChangeLogStore):
    def __init__(self, db: Session):
        self.db = db

    def fetch_changes(self, from_version: int, limit: int) -> List[SyncLogEntry]:
        if limit < 1:
            raise InvalidInput(f"limit must be >= 1, got {limit}")
        with storage_errors("reading the change log"):
            rows = (
                self.db.query(SyncLog)
                .filter(SyncLog.version > from_version)
                .order_by(SyncLog.version)
                .limit(limit)
                .all()
            )
        return [_row_to_entry(r) for r in rows]

    def append(self, entry: SyncLogEntry) -> SyncLogEntry:
        row = SyncLog(
            table_name=entry.table_name,
            pk_value=to_canonical_json(entry.pk_value),
            operation=entry.operation.value,
            payload=to_canonical_json(entry.payload) if entry.payload is not None else None,
            origin=entry.origin,
            timestamp=format_timestamp(entry.timestamp),
        )
        with storage_errors("appending to the change log"):
            self.db.add(row)
            self.db.flush()
        return entry.with_version(int(row.version))

    def changes_for_row(self, table_name: str, pk_value: Dict[str, Any],
                        after_version: int = 0) -> List[SyncLogEntry]:
        """Entries touching one row, ascending by version."""
        with storage_errors("reading the change log"):
            rows = (
                self.db.query(SyncLog)
                .filter(SyncLog.table_name == table_name, SyncLog.version > after_version)
                .order_by(SyncLog.version)
                .all()
            )
        entries = [_row_to_entry(r) for r in rows]
        return [e for e in entries if e.pk_value == pk_value]

    def delete_versions(self, versions: List[int]) -> int:
        if not versions:
            return 0
        with storage_errors("deleting log entries"):
            result = self.db.execute(delete(SyncLog).where(SyncLog.version.in_(versions)))
        return result.rowcount or 0

    def max_version(self) -> int:
        with storage_errors("reading the change log"):
            value = self.db.query(func.max(SyncLog.version)).scalar()
        return int(value or 0)

    def min_version(self) -> Optional[int]:
        with storage_errors("reading the change log"):
            value = self.db.query(func.min(SyncLog.version)).scalar()
        return int(value) if value is not None else None

    def count(self) -> int:
        with storage_errors("reading the change log"):
            return self.db.query(func.count(SyncLog.version)).scalar() or 0

    def retention_floor(self) -> int:
        return state.get_int(self.db, state.PURGED_THROUGH_VERSION)

    def purge_through(self, version: int) -> int:
        """Delete entries with version <= ``version`` and raise the retention floor."""
        if version <= self.retention_floor():
            return 0
        with storage_errors("purging the change log"):
            result = self.db.execute(delete(SyncLog).where(SyncLog.version <= version))
        state.set_value(self.db, state.PURGED_THROUGH_VERSION, version)
        purged = result.rowcount or 0
        logger.info("Purged %d log entries through version %d", purged, version)
        return purged
