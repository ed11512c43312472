from typing import Optional

from sqlalchemy.engine import Engine

from replisync.database.base import Base
from replisync.database.engine import SessionLocal


def get_db():
    """Provides a synchronous database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Optional[Engine] = None):
    """Create the sync bookkeeping tables (_sync_log, _sync_state, ...)."""
    import replisync.models  # noqa: F401  registers the mappers

    if bind is None:
        from replisync.database.engine import engine as bind

    Base.metadata.create_all(bind=bind)
