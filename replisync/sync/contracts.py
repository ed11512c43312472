"""Interfaces the coordinator drives.

The coordinator never touches a database directly. A replica is anything
that can apply changes, keep cursors and suppress its own capture while
remote changes are being written; a remote is anything that serves
batches and accepts pushes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from replisync.sync.batches import fetch_batch
from replisync.sync.entry import SyncBatch, SyncLogEntry
from replisync.sync.mapping import MappingDirection, MappingState

LAST_SERVER_VERSION = "last_server_version"
LAST_PUSH_VERSION = "last_push_version"


class ChangeLogStore(ABC):
    """Append-only, version-ordered change log."""

    @abstractmethod
    def fetch_changes(self, from_version: int, limit: int) -> List[SyncLogEntry]:
        """Entries with version > ``from_version``, ascending, at most ``limit``."""

    @abstractmethod
    def append(self, entry: SyncLogEntry) -> SyncLogEntry:
        """Store ``entry`` under a fresh version, keeping origin and timestamp."""

    @abstractmethod
    def max_version(self) -> int:
        ...

    @abstractmethod
    def retention_floor(self) -> int:
        """Versions at or below this have been purged."""

    @abstractmethod
    def purge_through(self, version: int) -> int:
        ...


class ChangeApplier(ABC):
    @abstractmethod
    def apply_change(self, entry: SyncLogEntry) -> None:
        """Apply one entry idempotently.

        Raises ``DependencyViolation`` when a referenced row is missing and
        ``StorageError`` for any other storage failure.
        """


class ReplicaStore(ChangeApplier):
    """Local side of a sync cycle."""

    log: ChangeLogStore

    @property
    @abstractmethod
    def origin_id(self) -> str:
        ...

    @abstractmethod
    def get_cursor(self, name: str) -> int:
        ...

    @abstractmethod
    def set_cursor(self, name: str, version: int) -> None:
        ...

    @abstractmethod
    def suppressed(self):
        """Context manager disabling change capture for its duration.

        Must release the suppression however the block exits, and must
        discard uncommitted work when the block raises.
        """

    @abstractmethod
    def pending_local_change(self, table_name: str, pk_value: Dict[str, Any]) -> Optional[SyncLogEntry]:
        """Latest local change to the row that has not been pushed yet."""

    @abstractmethod
    def discard_local_changes(self, table_name: str, pk_value: Dict[str, Any]) -> int:
        ...

    @abstractmethod
    def row_keys(self, table_name: str) -> List[Dict[str, Any]]:
        """Primary keys of every row currently in ``table_name``."""

    @abstractmethod
    def mapping_state(self, mapping_id: str, direction: MappingDirection) -> MappingState:
        """Stored progress of a table mapping; a fresh state when there is none."""

    @abstractmethod
    def save_mapping_state(self, mapping_state: MappingState) -> None:
        ...

    @abstractmethod
    def commit(self) -> None:
        ...

    @abstractmethod
    def rollback(self) -> None:
        ...


@dataclass
class PushResponse:
    applied: int
    failed: List[str] = field(default_factory=list)


@dataclass
class Snapshot:
    """Full copy of a set of tables as of ``version``."""

    version: int
    tables: Dict[str, List[Dict[str, Any]]]
    primary_keys: Dict[str, List[str]]


class ChangeSource(ABC):
    @abstractmethod
    def fetch_batch(self, from_version: int, batch_size: int) -> SyncBatch:
        ...


class ChangeSink(ABC):
    @abstractmethod
    def send(self, origin_id: str, changes: List[SyncLogEntry]) -> PushResponse:
        ...


class LogChangeSource(ChangeSource):
    """Serve batches straight out of a change log."""

    def __init__(self, log: ChangeLogStore):
        self.log = log

    def fetch_batch(self, from_version: int, batch_size: int) -> SyncBatch:
        return fetch_batch(from_version, batch_size, self.log.fetch_changes)
