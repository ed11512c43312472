from sqlalchemy import JSON, Column, DateTime, Integer, String, Text

from replisync.database.base import Base


class SyncEvent(Base):
    __tablename__ = "_sync_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    origin_id = Column(String, nullable=True, index=True)
    direction = Column(String, nullable=False)  # push, pull, purge
    entity_counts = Column(JSON, nullable=True)
    status = Column(String, nullable=False, default="completed")
    error_message = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    version_before = Column(Integer, nullable=True)
    version_after = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
