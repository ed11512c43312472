"""Core value types: log entries, batches, clients and batch config."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from replisync.sync.errors import InvalidInput
from replisync.sync.hashing import to_canonical_json

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

def utc_now() -> datetime:
    return _truncate_ms(datetime.now(timezone.utc))


def _truncate_ms(value: datetime) -> datetime:
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision, e.g. ``2024-01-01T00:00:00.000Z``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 instant; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        text = value.strip().replace(" ", "T", 1)
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            try:
                parsed = datetime.strptime(value, TIMESTAMP_FORMAT)
            except ValueError:
                raise InvalidInput(f"Invalid timestamp: {value!r}")
    else:
        raise InvalidInput(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return _truncate_ms(parsed.astimezone(timezone.utc))


# ---------------------------------------------------------------------------
# Log entries
# ---------------------------------------------------------------------------

class SyncOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def parse(cls, value: Any) -> "SyncOperation":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise InvalidInput(f"Unknown operation: {value!r}")


@dataclass(frozen=True)
class SyncLogEntry:
    """One row-level change captured in a replica's log."""

    version: int
    table_name: str
    pk_value: Dict[str, Any]
    operation: SyncOperation
    payload: Optional[Dict[str, Any]]
    origin: str
    timestamp: datetime

    @property
    def entry_id(self) -> str:
        return f"{self.version}:{self.table_name}"

    @property
    def row_key(self) -> Tuple[str, str]:
        """Identity of the row this entry touches."""
        return self.table_name, to_canonical_json(self.pk_value)

    def with_version(self, version: int) -> "SyncLogEntry":
        return replace(self, version=version)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "tableName": self.table_name,
            "pkValue": self.pk_value,
            "operation": self.operation.value,
            "payload": self.payload,
            "origin": self.origin,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "SyncLogEntry":
        try:
            version = int(data["version"])
            table_name = data["tableName"]
            pk_value = data["pkValue"]
            operation = SyncOperation.parse(data["operation"])
            origin = data["origin"]
            timestamp = parse_timestamp(data["timestamp"])
        except KeyError as exc:
            raise InvalidInput(f"Change is missing field {exc.args[0]!r}")
        except (TypeError, ValueError) as exc:
            raise InvalidInput(f"Malformed change: {exc}")

        payload = data.get("payload")
        if not isinstance(pk_value, dict):
            raise InvalidInput("pkValue must be a JSON object")
        if payload is not None and not isinstance(payload, dict):
            raise InvalidInput("payload must be a JSON object or null")
        if not table_name or not isinstance(table_name, str):
            raise InvalidInput("tableName must be a non-empty string")

        return cls(
            version=version,
            table_name=table_name,
            pk_value=dict(pk_value),
            operation=operation,
            payload=dict(payload) if payload is not None else None,
            origin=str(origin),
            timestamp=timestamp,
        )


# ---------------------------------------------------------------------------
# Batches, clients, config
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SyncBatch:
    changes: List[SyncLogEntry]
    from_version: int
    to_version: int
    has_more: bool
    hash: str

    def to_wire(self) -> Dict[str, Any]:
        return {
            "changes": [c.to_wire() for c in self.changes],
            "fromVersion": self.from_version,
            "toVersion": self.to_version,
            "hasMore": self.has_more,
            "hash": self.hash,
        }

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "SyncBatch":
        try:
            return cls(
                changes=[SyncLogEntry.from_wire(c) for c in data.get("changes", [])],
                from_version=int(data["fromVersion"]),
                to_version=int(data["toVersion"]),
                has_more=bool(data["hasMore"]),
                hash=str(data["hash"]),
            )
        except KeyError as exc:
            raise InvalidInput(f"Batch is missing field {exc.args[0]!r}")


@dataclass
class SyncClient:
    """A replica known to the hub."""

    origin_id: str
    last_sync_version: int
    last_sync_timestamp: datetime
    created_at: datetime = field(default_factory=utc_now)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "originId": self.origin_id,
            "lastSyncVersion": self.last_sync_version,
            "lastSyncTimestamp": format_timestamp(self.last_sync_timestamp),
            "createdAt": format_timestamp(self.created_at),
        }


DEFAULT_BATCH_SIZE = 1000
DEFAULT_MAX_RETRY_PASSES = 3


@dataclass(frozen=True)
class BatchConfig:
    batch_size: int = DEFAULT_BATCH_SIZE
    max_retry_passes: int = DEFAULT_MAX_RETRY_PASSES

    def __post_init__(self):
        if self.batch_size < 1:
            raise InvalidInput(f"batch_size must be >= 1, got {self.batch_size}")
        if self.max_retry_passes < 0:
            raise InvalidInput(
                f"max_retry_passes must be >= 0, got {self.max_retry_passes}"
            )
