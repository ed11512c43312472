"""Bounded batches over a change log."""

import logging
from typing import Callable, List

from replisync.sync.entry import SyncBatch, SyncLogEntry
from replisync.sync.errors import HashMismatch, InvalidInput
from replisync.sync.hashing import compute_batch_hash

logger = logging.getLogger(__name__)

FetchChanges = Callable[[int, int], List[SyncLogEntry]]


def fetch_batch(from_version: int, batch_size: int, fetch_changes: FetchChanges) -> SyncBatch:
    """Read at most ``batch_size`` entries with version > ``from_version``.

    ``has_more`` is set when the batch came back full, so the reader knows
    to ask again; an exactly-full final batch costs one extra empty read.
    """
    if batch_size < 1:
        raise InvalidInput(f"batch_size must be >= 1, got {batch_size}")
    if from_version < 0:
        raise InvalidInput(f"from_version must be >= 0, got {from_version}")

    changes = list(fetch_changes(from_version, batch_size))
    if len(changes) > batch_size:
        changes = changes[:batch_size]

    to_version = changes[-1].version if changes else from_version
    batch = SyncBatch(
        changes=changes,
        from_version=from_version,
        to_version=to_version,
        has_more=len(changes) == batch_size,
        hash=compute_batch_hash(changes),
    )
    logger.debug(
        "Built batch %d..%d (%d changes, has_more=%s)",
        from_version, to_version, len(changes), batch.has_more,
    )
    return batch


def verify_batch_hash(batch: SyncBatch) -> None:
    """Raise ``HashMismatch`` if the batch content does not match its hash."""
    actual = compute_batch_hash(batch.changes)
    if actual != batch.hash:
        logger.warning(
            "Hash mismatch for batch %d..%d", batch.from_version, batch.to_version
        )
        raise HashMismatch(batch.hash, actual)
