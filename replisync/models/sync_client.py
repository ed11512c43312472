from sqlalchemy import Column, DateTime, Integer, String

from replisync.database.base import Base


class SyncClientRecord(Base):
    __tablename__ = "_sync_clients"

    origin_id = Column(String, primary_key=True)
    last_sync_version = Column(Integer, nullable=False, default=0)
    last_sync_timestamp = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
