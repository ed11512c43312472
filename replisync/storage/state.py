"""Helpers over _sync_state and _sync_session."""

import logging
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from replisync.models.sync_state import SyncSessionFlag, SyncState
from replisync.sync.errors import StorageError

logger = logging.getLogger(__name__)

ORIGIN_ID = "origin_id"
PURGED_THROUGH_VERSION = "purged_through_version"


@contextmanager
def storage_errors(action: str) -> Iterator[None]:
    """Re-raise SQLAlchemy failures as ``StorageError``."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("Storage failure while %s: %s", action, exc)
        raise StorageError(f"Storage failure while {action}: {exc}") from exc


def get_value(db: Session, key: str) -> Optional[str]:
    with storage_errors(f"reading {key}"):
        row = db.get(SyncState, key)
    return row.value if row is not None else None


def set_value(db: Session, key: str, value) -> None:
    with storage_errors(f"writing {key}"):
        row = db.get(SyncState, key)
        if row is None:
            db.add(SyncState(key=key, value=str(value)))
        else:
            row.value = str(value)
        db.flush()


def get_int(db: Session, key: str, default: int = 0) -> int:
    value = get_value(db, key)
    return int(value) if value not in (None, "") else default


def ensure_sync_state(db: Session, origin_id: Optional[str] = None) -> str:
    """Seed the session flag row and the origin ID; returns the origin ID.

    An explicit ``origin_id`` overrides whatever is stored.
    """
    with storage_errors("initialising sync state"):
        flag = db.get(SyncSessionFlag, 1)
        if flag is None:
            db.add(SyncSessionFlag(id=1, sync_active=0))
            db.flush()
        elif flag.sync_active:
            # Suppression is never committed; a set flag is left over from a crash.
            logger.warning("Clearing change-capture suppression left set by an interrupted sync")
            flag.sync_active = 0
            db.flush()

    stored = get_value(db, ORIGIN_ID)
    if origin_id and origin_id != stored:
        set_value(db, ORIGIN_ID, origin_id)
        return origin_id
    if stored:
        return stored

    generated = str(uuid.uuid4())
    set_value(db, ORIGIN_ID, generated)
    logger.info("Generated origin ID %s", generated)
    return generated


def set_sync_active(db: Session, active: bool) -> None:
    with storage_errors("toggling change capture"):
        db.execute(update(SyncSessionFlag).values(sync_active=1 if active else 0))


def is_sync_active(db: Session) -> bool:
    with storage_errors("reading change capture flag"):
        value = db.query(SyncSessionFlag.sync_active).filter(SyncSessionFlag.id == 1).scalar()
    return bool(value)
