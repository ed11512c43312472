"""SQLAlchemy-backed log, replica and trigger management."""

from replisync.storage.applier import SqlChangeApplier, is_dependency_violation
from replisync.storage.clients import SqlClientRepository
from replisync.storage.log_store import SqlChangeLogStore
from replisync.storage.replica import SqlReplicaStore
from replisync.storage.triggers import track_table, tracked_tables, untrack_table

__all__ = [
    "SqlChangeApplier",
    "SqlChangeLogStore",
    "SqlClientRepository",
    "SqlReplicaStore",
    "is_dependency_violation",
    "track_table",
    "tracked_tables",
    "untrack_table",
]
