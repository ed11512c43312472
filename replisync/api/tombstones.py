"""Change-log retention endpoints."""

from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from replisync.api.sync import CamelModel
from replisync.database.session import get_db
from replisync.services.tombstone_service import tombstone_service

router = APIRouter(prefix="/sync/tombstones", tags=["tombstones"])


class TombstoneReport(CamelModel):
    current_version: int
    oldest_available_version: int
    log_entries: int
    safe_purge_version: Optional[int] = None
    stale_clients: List[str]


class PurgeRequest(CamelModel):
    prune_stale_clients: bool = False


class PurgeResponse(CamelModel):
    purged: int
    safe_purge_version: Optional[int] = None
    oldest_available_version: int
    pruned_clients: List[str]
    stale_clients: List[str]


@router.get("", response_model=TombstoneReport)
def tombstone_report(db: Session = Depends(get_db)):
    return tombstone_service.report(db)


@router.post("/purge", response_model=PurgeResponse)
def purge(body: Optional[PurgeRequest] = None, db: Session = Depends(get_db)):
    """Purge log entries every registered client has already pulled."""
    prune = body.prune_stale_clients if body else False
    return tombstone_service.purge(db, prune_stale_clients=prune)
