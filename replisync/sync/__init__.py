"""Storage-independent sync engine."""

from replisync.sync.batches import fetch_batch, verify_batch_hash
from replisync.sync.conflicts import (
    ConflictResolution,
    ConflictStrategy,
    is_conflict,
    resolve,
    resolve_last_write_wins,
)
from replisync.sync.contracts import (
    LAST_PUSH_VERSION,
    LAST_SERVER_VERSION,
    ChangeApplier,
    ChangeLogStore,
    ChangeSink,
    ChangeSource,
    LogChangeSource,
    PushResponse,
    ReplicaStore,
    Snapshot,
)
from replisync.sync.coordinator import (
    PullResult,
    PushResult,
    SyncCoordinator,
    SyncResult,
    apply_with_retry,
)
from replisync.sync.entry import (
    BatchConfig,
    SyncBatch,
    SyncClient,
    SyncLogEntry,
    SyncOperation,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from replisync.sync.errors import (
    DeferredChangesFailed,
    DependencyViolation,
    FullResyncRequired,
    HashMismatch,
    InvalidInput,
    StorageError,
    SyncError,
    SyncErrorKind,
    UnknownStrategy,
)
from replisync.sync.hashing import (
    compute_batch_hash,
    compute_database_hash,
    to_canonical_json,
    verify_hash,
)
from replisync.sync.mapping import (
    MappingConfig,
    MappingDirection,
    MappingState,
    MappingTracker,
    TableMapping,
    UnmappedTableBehavior,
    apply_mapping,
    load_mapping_config,
    parse_mapping_config,
)
from replisync.sync.subscriptions import DeliveryQueue, Subscription, SubscriptionHub
