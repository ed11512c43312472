"""_sync_clients access."""

from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from replisync.models.sync_client import SyncClientRecord
from replisync.storage.state import storage_errors
from replisync.sync.entry import SyncClient, parse_timestamp


def _to_client(row: SyncClientRecord) -> SyncClient:
    return SyncClient(
        origin_id=row.origin_id,
        last_sync_version=int(row.last_sync_version),
        last_sync_timestamp=parse_timestamp(row.last_sync_timestamp),
        created_at=parse_timestamp(row.created_at),
    )


class SqlClientRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, origin_id: str) -> Optional[SyncClient]:
        with storage_errors("reading clients"):
            row = self.db.get(SyncClientRecord, origin_id)
        return _to_client(row) if row is not None else None

    def all(self) -> List[SyncClient]:
        with storage_errors("reading clients"):
            rows = self.db.query(SyncClientRecord).order_by(SyncClientRecord.origin_id).all()
        return [_to_client(r) for r in rows]

    def save(self, client: SyncClient) -> SyncClient:
        with storage_errors("saving client"):
            row = self.db.get(SyncClientRecord, client.origin_id)
            if row is None:
                row = SyncClientRecord(origin_id=client.origin_id, created_at=client.created_at)
                self.db.add(row)
            row.last_sync_version = client.last_sync_version
            row.last_sync_timestamp = client.last_sync_timestamp
            self.db.flush()
        return client

    def delete(self, origin_ids: Iterable[str]) -> int:
        origin_ids = list(origin_ids)
        if not origin_ids:
            return 0
        with storage_errors("deleting clients"):
            deleted = (
                self.db.query(SyncClientRecord)
                .filter(SyncClientRecord.origin_id.in_(origin_ids))
                .delete(synchronize_session=False)
            )
            self.db.expire_all()
        return deleted
