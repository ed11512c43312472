from sqlalchemy import Column, Index, String, Text

from replisync.database.base import Base, VersionType


class SyncLog(Base):
    """One captured row change. Written by triggers and by relay appends."""

    __tablename__ = "_sync_log"
    __table_args__ = (
        Index("ix__sync_log_table_name", "table_name"),
        {"sqlite_autoincrement": True},
    )

    version = Column(VersionType, primary_key=True, autoincrement=True)
    table_name = Column(String, nullable=False)
    pk_value = Column(Text, nullable=False)  # JSON object
    operation = Column(String(6), nullable=False)  # insert, update, delete
    payload = Column(Text, nullable=True)  # JSON object, NULL for delete
    origin = Column(String, nullable=False)
    timestamp = Column(String, nullable=False)  # ISO-8601 UTC, ms precision
