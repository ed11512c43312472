"""Deterministic resolution of concurrent edits to the same row."""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

from replisync.sync.entry import SyncLogEntry
from replisync.sync.errors import InvalidInput, UnknownStrategy

MergeFunction = Callable[[SyncLogEntry, SyncLogEntry], SyncLogEntry]


class ConflictStrategy(str, Enum):
    LAST_WRITE_WINS = "last_write_wins"
    SERVER_WINS = "server_wins"
    CLIENT_WINS = "client_wins"
    CUSTOM = "custom"


@dataclass(frozen=True)
class ConflictResolution:
    winner: SyncLogEntry
    strategy: ConflictStrategy


def is_conflict(a: SyncLogEntry, b: SyncLogEntry) -> bool:
    """Same row, edited by different origins."""
    return (
        a.table_name == b.table_name
        and a.row_key == b.row_key
        and a.origin != b.origin
    )


def _precedence(entry: SyncLogEntry):
    return entry.timestamp, entry.version, entry.origin


def resolve_last_write_wins(a: SyncLogEntry, b: SyncLogEntry) -> SyncLogEntry:
    """Later timestamp wins; ties fall to the higher version, then origin.

    Symmetric: argument order never changes the winner.
    """
    return a if _precedence(a) >= _precedence(b) else b


def parse_strategy(strategy: Union[ConflictStrategy, str]) -> ConflictStrategy:
    if isinstance(strategy, ConflictStrategy):
        return strategy
    try:
        return ConflictStrategy(str(strategy).lower())
    except ValueError:
        raise UnknownStrategy(strategy)


def resolve(
    local: SyncLogEntry,
    remote: SyncLogEntry,
    strategy: Union[ConflictStrategy, str] = ConflictStrategy.LAST_WRITE_WINS,
    merge: Optional[MergeFunction] = None,
) -> ConflictResolution:
    """Pick the surviving entry for a conflicting pair.

    ``local`` is this replica's unsent change, ``remote`` the incoming one
    from the hub. Server-wins therefore keeps ``remote``.
    """
    strategy = parse_strategy(strategy)

    if strategy is ConflictStrategy.LAST_WRITE_WINS:
        winner = resolve_last_write_wins(local, remote)
    elif strategy is ConflictStrategy.SERVER_WINS:
        winner = remote
    elif strategy is ConflictStrategy.CLIENT_WINS:
        winner = local
    else:
        if merge is None:
            raise InvalidInput("Custom conflict strategy requires a merge function")
        winner = merge(local, remote)
        if not isinstance(winner, SyncLogEntry):
            raise InvalidInput("Merge function must return a SyncLogEntry")

    return ConflictResolution(winner=winner, strategy=strategy)
