"""Sync endpoints — pull, push, client registration, state and verification."""

from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from replisync.api.dependencies import get_subscription_hub
from replisync.core.config import settings
from replisync.database.session import get_db
from replisync.services.sync_service import sync_service
from replisync.storage.triggers import tracked_tables
from replisync.sync.entry import SyncLogEntry, format_timestamp
from replisync.sync.subscriptions import SubscriptionHub

router = APIRouter(prefix="/sync", tags=["sync"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


class ChangeSchema(CamelModel):
    """One log entry on the wire."""
    version: int
    table_name: str
    pk_value: Dict[str, Any]
    operation: Literal["insert", "update", "delete"]
    payload: Optional[Dict[str, Any]] = None
    origin: str
    timestamp: str


class BatchResponse(CamelModel):
    changes: List[ChangeSchema]
    from_version: int
    to_version: int
    has_more: bool
    hash: str


class PushRequest(CamelModel):
    origin_id: str
    changes: List[ChangeSchema]


class PushResponseSchema(CamelModel):
    applied: int
    failed: List[str] = []


class RegisterClientRequest(CamelModel):
    origin_id: str
    last_sync_version: int = 0


class ClientSchema(CamelModel):
    origin_id: str
    last_sync_version: int
    last_sync_timestamp: str
    created_at: str


class InitRequest(CamelModel):
    origin_id: Optional[str] = None
    tables: List[str] = []


class InitResponse(CamelModel):
    origin_id: str
    tables: List[str]


class StateResponse(CamelModel):
    origin_id: str
    current_version: int
    oldest_available_version: int
    log_entries: int
    clients: int
    tracked_tables: List[str]


class HashResponse(CamelModel):
    hash: str
    tables: List[str]


class SnapshotResponse(CamelModel):
    version: int
    tables: Dict[str, List[Dict[str, Any]]]
    primary_keys: Dict[str, List[str]]


class SyncEventSchema(CamelModel):
    id: int
    origin_id: Optional[str] = None
    direction: str
    status: str
    entity_counts: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    version_before: Optional[int] = None
    version_after: Optional[int] = None
    created_at: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _to_entries(changes: List[ChangeSchema]) -> List[SyncLogEntry]:
    return [SyncLogEntry.from_wire(c.model_dump(by_alias=True)) for c in changes]


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.get("/changes", response_model=BatchResponse)
def pull_changes(
    from_version: int = Query(0, ge=0, alias="fromVersion"),
    batch_size: Optional[int] = Query(None, ge=1, le=settings.SYNC_MAX_BATCH_SIZE, alias="batchSize"),
    origin_id: Optional[str] = Query(None, alias="originId"),
    db: Session = Depends(get_db),
):
    """Return the next batch of changes after ``fromVersion``."""
    batch = sync_service.build_pull(db, from_version, batch_size, origin_id)
    return batch.to_wire()


@router.post("/changes", response_model=PushResponseSchema)
def push_changes(
    body: PushRequest,
    db: Session = Depends(get_db),
    hub: SubscriptionHub = Depends(get_subscription_hub),
):
    """Apply a replica's changes and relay them to everyone else."""
    result = sync_service.apply_push(db, body.origin_id, _to_entries(body.changes), hub)
    return {"applied": result.applied, "failed": result.failed}


@router.post("/clients/register", response_model=ClientSchema)
def register_client(body: RegisterClientRequest, db: Session = Depends(get_db)):
    client = sync_service.register_client(db, body.origin_id, body.last_sync_version)
    return client.to_wire()


@router.get("/clients", response_model=List[ClientSchema])
def list_clients(db: Session = Depends(get_db)):
    return [c.to_wire() for c in sync_service.list_clients(db)]


@router.get("/state", response_model=StateResponse)
def get_state(db: Session = Depends(get_db)):
    return sync_service.get_state(db)


@router.post("/init", response_model=InitResponse)
def initialize(body: InitRequest, db: Session = Depends(get_db)):
    """Seed the origin ID and install change capture on ``tables``."""
    return sync_service.initialize(db, body.origin_id, body.tables)


@router.get("/hash", response_model=HashResponse)
def database_hash(
    tables: Optional[List[str]] = Query(None),
    db: Session = Depends(get_db),
):
    """Content hash of the given (default: tracked) tables."""
    table_names = tables or tracked_tables(db)
    return {"hash": sync_service.database_hash(db, table_names), "tables": sorted(table_names)}


@router.get("/snapshot", response_model=SnapshotResponse)
def snapshot(
    tables: Optional[List[str]] = Query(None),
    db: Session = Depends(get_db),
):
    """Full table contents, for replicas that must re-baseline."""
    snap = sync_service.build_snapshot(db, tables)
    return {"version": snap.version, "tables": snap.tables, "primaryKeys": snap.primary_keys}


@router.get("/events", response_model=List[SyncEventSchema])
def recent_events(
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return [
        {
            "id": e.id,
            "originId": e.origin_id,
            "direction": e.direction,
            "status": e.status,
            "entityCounts": e.entity_counts,
            "errorMessage": e.error_message,
            "durationMs": e.duration_ms,
            "versionBefore": e.version_before,
            "versionAfter": e.version_after,
            "createdAt": format_timestamp(e.created_at),
        }
        for e in sync_service.recent_events(db, limit)
    ]
