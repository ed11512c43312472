"""Pull, push and re-baseline orchestration for one replica.

Pull applies remote batches under capture suppression, skipping the
replica's own echoed changes and deferring entries whose referenced rows
have not arrived yet. Deferred entries carry over into later batches; the
persisted cursor never moves past the oldest of them, so a crash or a
final failure re-fetches them on the next cycle.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

from replisync.sync.batches import fetch_batch, verify_batch_hash
from replisync.sync.conflicts import (
    ConflictStrategy,
    MergeFunction,
    is_conflict,
    parse_strategy,
    resolve,
)
from replisync.sync.contracts import (
    LAST_PUSH_VERSION,
    LAST_SERVER_VERSION,
    ChangeSink,
    ChangeSource,
    ReplicaStore,
    Snapshot,
)
from replisync.sync.entry import BatchConfig, SyncLogEntry, SyncOperation, utc_now
from replisync.sync.errors import DeferredChangesFailed, DependencyViolation, InvalidInput
from replisync.sync.hashing import to_canonical_json
from replisync.sync.mapping import MappingConfig, MappingDirection, MappingTracker, apply_mapping

logger = logging.getLogger(__name__)

SNAPSHOT_ORIGIN = "snapshot"

# Returns True when the entry was applied, False when it was dropped.
# Raises DependencyViolation to have the entry deferred.
Attempt = Callable[[SyncLogEntry], bool]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class ApplyResult:
    applied: List[SyncLogEntry] = field(default_factory=list)
    dropped: List[SyncLogEntry] = field(default_factory=list)
    deferred: List[SyncLogEntry] = field(default_factory=list)
    retry_passes: int = 0


@dataclass
class PullResult:
    from_version: int = 0
    to_version: int = 0
    applied: int = 0
    skipped: int = 0
    conflicts: int = 0
    batches: int = 0


@dataclass
class PushResult:
    from_version: int = 0
    to_version: int = 0
    pushed: int = 0
    skipped: int = 0
    batches: int = 0


@dataclass
class SyncResult:
    pull: PullResult
    push: PushResult


# ---------------------------------------------------------------------------
# Apply with deferral
# ---------------------------------------------------------------------------

def _apply_pass(entries: Sequence[SyncLogEntry], attempt: Attempt,
                result: ApplyResult) -> List[SyncLogEntry]:
    deferred: List[SyncLogEntry] = []
    blocked = set()
    for entry in entries:
        key = entry.row_key
        if key in blocked:
            # An earlier change to this row is waiting; keep per-row order.
            deferred.append(entry)
            continue
        try:
            applied = attempt(entry)
        except DependencyViolation as exc:
            logger.debug("Deferring %s: %s", entry.entry_id, exc.detail)
            deferred.append(entry)
            blocked.add(key)
            continue
        if applied:
            result.applied.append(entry)
        else:
            result.dropped.append(entry)
    return deferred


def apply_with_retry(entries: Iterable[SyncLogEntry], attempt: Attempt,
                     max_retry_passes: int) -> ApplyResult:
    """Apply entries in version order, retrying dependency violations.

    After the first pass, entries that hit a dependency violation get up to
    ``max_retry_passes`` further passes. Whatever still fails is returned in
    ``deferred``; the caller decides whether that is fatal.
    """
    result = ApplyResult()
    pending = _apply_pass(sorted(entries, key=lambda e: e.version), attempt, result)
    while pending and result.retry_passes < max_retry_passes:
        result.retry_passes += 1
        before = len(pending)
        pending = _apply_pass(pending, attempt, result)
        logger.debug(
            "Retry pass %d: %d of %d deferred change(s) applied",
            result.retry_passes, before - len(pending), before,
        )
    result.deferred = pending
    return result


def _watermark(pending: Sequence[SyncLogEntry], fetched_through: int) -> int:
    if not pending:
        return fetched_through
    return min(e.version for e in pending) - 1


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class SyncCoordinator:
    def __init__(
        self,
        origin_id: str,
        config: Optional[BatchConfig] = None,
        conflict_strategy: Union[ConflictStrategy, str] = ConflictStrategy.LAST_WRITE_WINS,
        merge: Optional[MergeFunction] = None,
        mapping: Optional[MappingConfig] = None,
    ):
        if not origin_id:
            raise InvalidInput("origin_id is required")
        self.origin_id = origin_id
        self.config = config or BatchConfig()
        self.conflict_strategy = parse_strategy(conflict_strategy)
        if self.conflict_strategy is ConflictStrategy.CUSTOM and merge is None:
            raise InvalidInput("Custom conflict strategy requires a merge function")
        self.merge = merge
        self.mapping = mapping

    # -- pull ---------------------------------------------------------------

    def pull(self, source: ChangeSource, replica: ReplicaStore) -> PullResult:
        start = replica.get_cursor(LAST_SERVER_VERSION)
        result = PullResult(from_version=start, to_version=start)
        fetched_through = start
        pending: List[SyncLogEntry] = []
        conflicts: List[SyncLogEntry] = []
        passes = 0
        tracker = self._tracker(MappingDirection.PULL, replica)

        def attempt(entry: SyncLogEntry) -> bool:
            return self._apply_remote(entry, replica, conflicts)

        with replica.suppressed():
            while True:
                batch = source.fetch_batch(fetched_through, self.config.batch_size)
                verify_batch_hash(batch)
                if not batch.changes:
                    break
                result.batches += 1

                fresh = []
                for entry in batch.changes:
                    if entry.origin == self.origin_id:
                        result.skipped += 1
                        continue
                    mapped = tracker.map(entry) if tracker else [entry]
                    if not mapped:
                        result.skipped += 1
                    fresh.extend(mapped)

                outcome = apply_with_retry(pending + fresh, attempt, self.config.max_retry_passes)
                result.applied += len(outcome.applied)
                pending = outcome.deferred
                passes = outcome.retry_passes

                fetched_through = batch.to_version
                result.to_version = _watermark(pending, fetched_through)
                replica.set_cursor(LAST_SERVER_VERSION, result.to_version)
                if tracker:
                    tracker.record(outcome.applied, result.to_version, utc_now())
                replica.commit()

                if not batch.has_more:
                    break

        result.conflicts = len(conflicts)
        logger.info(
            "Pulled %d..%d: applied=%d skipped=%d conflicts=%d batches=%d",
            result.from_version, result.to_version, result.applied,
            result.skipped, result.conflicts, result.batches,
        )
        if pending:
            raise DeferredChangesFailed(pending, passes)
        return result

    def _apply_remote(self, entry: SyncLogEntry, replica: ReplicaStore,
                      conflicts: List[SyncLogEntry]) -> bool:
        target = entry
        local = replica.pending_local_change(entry.table_name, entry.pk_value)
        conflicted = local is not None and is_conflict(local, entry)

        if conflicted:
            resolution = resolve(local, entry, self.conflict_strategy, self.merge)
            if resolution.winner == local:
                logger.info(
                    "Conflict on %s %s: local change wins (%s)",
                    entry.table_name, entry.pk_value, resolution.strategy.value,
                )
                conflicts.append(entry)
                return False
            target = resolution.winner

        replica.apply_change(target)

        if conflicted:
            conflicts.append(entry)
            replica.discard_local_changes(entry.table_name, entry.pk_value)
            if target is not entry:
                replica.log.append(replace(target, origin=self.origin_id))
        return True

    def _tracker(self, direction: MappingDirection, replica: ReplicaStore) -> Optional[MappingTracker]:
        if self.mapping is None:
            return None
        return MappingTracker(self.mapping, direction, replica)

    # -- push ---------------------------------------------------------------

    def push(self, replica: ReplicaStore, sink: ChangeSink) -> PushResult:
        start = replica.get_cursor(LAST_PUSH_VERSION)
        result = PushResult(from_version=start, to_version=start)
        cursor = start
        tracker = self._tracker(MappingDirection.PUSH, replica)

        while True:
            batch = fetch_batch(cursor, self.config.batch_size, replica.log.fetch_changes)
            if not batch.changes:
                break
            result.batches += 1

            outgoing = []
            for entry in batch.changes:
                if entry.origin != self.origin_id:
                    continue
                mapped = tracker.map(entry) if tracker else [entry]
                if not mapped:
                    result.skipped += 1
                outgoing.extend(mapped)

            if outgoing:
                response = sink.send(self.origin_id, outgoing)
                if response.failed:
                    failed = set(response.failed)
                    raise DeferredChangesFailed(
                        [e for e in outgoing if e.entry_id in failed],
                        failed_ids=list(response.failed),
                    )
                result.pushed += len(outgoing)

            cursor = batch.to_version
            replica.set_cursor(LAST_PUSH_VERSION, cursor)
            if tracker:
                tracker.record(outgoing, cursor, utc_now())
            replica.commit()
            result.to_version = cursor

            if not batch.has_more:
                break

        logger.info(
            "Pushed %d..%d: %d change(s) in %d batch(es), %d skipped",
            result.from_version, result.to_version, result.pushed, result.batches, result.skipped,
        )
        return result

    def sync(self, source: ChangeSource, sink: ChangeSink, replica: ReplicaStore) -> SyncResult:
        """Pull, then push. Pulling first lets conflicts resolve locally."""
        pulled = self.pull(source, replica)
        pushed = self.push(replica, sink)
        return SyncResult(pull=pulled, push=pushed)

    # -- re-baseline --------------------------------------------------------

    def rebaseline(self, snapshot: Snapshot, replica: ReplicaStore) -> PullResult:
        """Replace the replica's tables with ``snapshot`` and jump to its version.

        Used after ``FullResyncRequired``. Unpushed local changes to the
        snapshotted tables are abandoned.
        """
        start = replica.get_cursor(LAST_SERVER_VERSION)
        now = utc_now()
        deletes: List[SyncLogEntry] = []
        upserts: List[SyncLogEntry] = []

        for table_name, rows in snapshot.tables.items():
            pk_columns = snapshot.primary_keys.get(table_name) or []
            if not pk_columns:
                raise InvalidInput(f"Snapshot has no primary key for {table_name}")
            if self.mapping is None:
                targets = [table_name]
            else:
                targets = self.mapping.target_tables(table_name, MappingDirection.PULL)
            keep: Dict[str, set] = {target: set() for target in targets}
            for row in rows:
                entry = SyncLogEntry(
                    0, table_name, {c: row[c] for c in pk_columns}, SyncOperation.INSERT,
                    dict(row), SNAPSHOT_ORIGIN, now,
                )
                if self.mapping is None:
                    mapped = [entry]
                else:
                    mapped = apply_mapping(entry, self.mapping, MappingDirection.PULL)
                for m in mapped:
                    keep.setdefault(m.table_name, set()).add(to_canonical_json(m.pk_value))
                upserts.extend(mapped)
            for target, kept in keep.items():
                for pk_value in replica.row_keys(target):
                    if to_canonical_json(pk_value) not in kept:
                        deletes.append(SyncLogEntry(
                            0, target, pk_value, SyncOperation.DELETE, None,
                            SNAPSHOT_ORIGIN, now,
                        ))

        entries = [e.with_version(i) for i, e in enumerate(deletes + upserts, start=1)]

        def attempt(entry: SyncLogEntry) -> bool:
            replica.apply_change(entry)
            return True

        with replica.suppressed():
            outcome = apply_with_retry(entries, attempt, self.config.max_retry_passes)
            if outcome.deferred:
                raise DeferredChangesFailed(outcome.deferred, outcome.retry_passes)
            abandoned = replica.log.max_version() - replica.get_cursor(LAST_PUSH_VERSION)
            if abandoned > 0:
                logger.warning("Re-baseline abandons up to %d unpushed local change(s)", abandoned)
            replica.set_cursor(LAST_PUSH_VERSION, replica.log.max_version())
            replica.set_cursor(LAST_SERVER_VERSION, snapshot.version)
            replica.commit()

        logger.info(
            "Re-baselined %d table(s) at version %d (%d rows, %d deletes)",
            len(snapshot.tables), snapshot.version, len(upserts), len(deletes),
        )
        return PullResult(
            from_version=start,
            to_version=snapshot.version,
            applied=len(outcome.applied),
            batches=1,
        )
