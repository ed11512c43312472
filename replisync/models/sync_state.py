from sqlalchemy import Column, DateTime, Integer, String, Text

from replisync.database.base import Base


class SyncState(Base):
    """Key/value bookkeeping: origin ID, cursors, purge watermark."""

    __tablename__ = "_sync_state"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)


class SyncSessionFlag(Base):
    """Single-row flag read by the capture triggers."""

    __tablename__ = "_sync_session"

    id = Column(Integer, primary_key=True)
    sync_active = Column(Integer, nullable=False, default=0)


class SyncMappingState(Base):
    """Progress of one table mapping in one direction."""

    __tablename__ = "_sync_mapping_state"

    mapping_id = Column(String, primary_key=True)
    direction = Column(String, primary_key=True)
    last_synced_version = Column(Integer, nullable=False, default=0)
    last_sync_timestamp = Column(DateTime(timezone=True), nullable=True)
    records_synced = Column(Integer, nullable=False, default=0)
