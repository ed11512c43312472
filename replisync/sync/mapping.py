"""Table and column mapping between replicas with different schemas.

A ``TableMapping`` renames a table and its primary key column, renames,
drops or fills columns, and applies to pushes, pulls or both. A mapping
may also fan one source table out to several target tables. Tables with
no mapping are skipped (strict) or synced unchanged (passthrough).

Mapping configuration is JSON with snake_case keys::

    {
      "version": "1.0",
      "unmapped_table_behavior": "strict",
      "mappings": [
        {
          "id": "patients",
          "source_table": "Patient",
          "target_table": "Person",
          "direction": "both",
          "pk_mapping": {"source_column": "patient_id", "target_column": "id"},
          "column_mappings": [
            {"source": "patient_id", "target": "id"},
            {"source": "full_name", "target": "name"},
            {"target": "email", "transform": "constant", "value": null}
          ]
        }
      ]
    }
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ValidationError, field_validator, model_validator

from replisync.sync.entry import SyncLogEntry
from replisync.sync.errors import InvalidInput

logger = logging.getLogger(__name__)


class MappingDirection(str, Enum):
    PUSH = "push"
    PULL = "pull"
    BOTH = "both"


class UnmappedTableBehavior(str, Enum):
    STRICT = "strict"
    PASSTHROUGH = "passthrough"


class TransformType(str, Enum):
    NONE = "none"
    CONSTANT = "constant"


def _lower(value):
    return value.lower() if isinstance(value, str) else value


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class PkMapping(BaseModel):
    source_column: str
    target_column: str


class ColumnMapping(BaseModel):
    source: Optional[str] = None
    target: str
    transform: TransformType = TransformType.NONE
    value: Any = None

    @field_validator("transform", mode="before")
    @classmethod
    def normalize_transform(cls, value):
        return _lower(value)

    @model_validator(mode="after")
    def check_source_or_constant(self):
        if self.transform is TransformType.NONE and not self.source:
            raise ValueError(f"column '{self.target}' needs a source column or a constant")
        return self


class TargetConfig(BaseModel):
    table: str
    column_mappings: List[ColumnMapping]


class SyncTracking(BaseModel):
    enabled: bool = True


class TableMapping(BaseModel):
    id: str
    source_table: str
    target_table: Optional[str] = None
    direction: MappingDirection = MappingDirection.PUSH
    enabled: bool = True
    pk_mapping: Optional[PkMapping] = None
    column_mappings: List[ColumnMapping] = []
    excluded_columns: List[str] = []
    sync_tracking: SyncTracking = SyncTracking()
    targets: List[TargetConfig] = []

    @field_validator("direction", mode="before")
    @classmethod
    def normalize_direction(cls, value):
        return _lower(value)

    def applies_to(self, direction: MappingDirection) -> bool:
        return self.direction in (direction, MappingDirection.BOTH)

    def target_tables(self) -> List[str]:
        if self.targets:
            return [t.table for t in self.targets]
        return [self.target_table or self.source_table]


class MappingConfig(BaseModel):
    version: str = "1.0"
    unmapped_table_behavior: UnmappedTableBehavior = UnmappedTableBehavior.STRICT
    mappings: List[TableMapping] = []

    @field_validator("unmapped_table_behavior", mode="before")
    @classmethod
    def normalize_behavior(cls, value):
        return _lower(value)

    @field_validator("mappings")
    @classmethod
    def check_unique_ids(cls, mappings: List[TableMapping]) -> List[TableMapping]:
        seen = set()
        for mapping in mappings:
            if mapping.id in seen:
                raise ValueError(f"duplicate mapping id '{mapping.id}'")
            seen.add(mapping.id)
        return mappings

    @classmethod
    def passthrough(cls) -> "MappingConfig":
        return cls(unmapped_table_behavior=UnmappedTableBehavior.PASSTHROUGH)

    def find_mapping(self, table_name: str, direction: MappingDirection) -> Optional[TableMapping]:
        for mapping in self.mappings:
            if mapping.source_table == table_name and mapping.applies_to(direction):
                return mapping
        return None

    def target_tables(self, table_name: str, direction: MappingDirection) -> List[str]:
        """Tables a change to ``table_name`` lands in; empty when it is not synced."""
        mapping = self.find_mapping(table_name, direction)
        if mapping is None:
            if self.unmapped_table_behavior is UnmappedTableBehavior.PASSTHROUGH:
                return [table_name]
            return []
        return mapping.target_tables() if mapping.enabled else []


def parse_mapping_config(data: Union[str, bytes, Mapping[str, Any]]) -> MappingConfig:
    """Build a ``MappingConfig`` from JSON text or an already-decoded dict."""
    try:
        if isinstance(data, (str, bytes)):
            config = MappingConfig.model_validate_json(data)
        else:
            config = MappingConfig.model_validate(data)
    except ValidationError as exc:
        raise InvalidInput(f"Invalid mapping configuration: {exc}") from exc
    logger.info("Loaded mapping config v%s with %d mapping(s)", config.version, len(config.mappings))
    return config


def load_mapping_config(path: Union[str, Path]) -> MappingConfig:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise InvalidInput(f"Cannot read mapping configuration {path}: {exc}") from exc
    return parse_mapping_config(text)


# ---------------------------------------------------------------------------
# Entry mapping
# ---------------------------------------------------------------------------

def map_primary_key(pk_value: Mapping[str, Any], pk_mapping: Optional[PkMapping]) -> Dict[str, Any]:
    if pk_mapping is None or pk_mapping.source_column not in pk_value:
        return dict(pk_value)
    return {
        (pk_mapping.target_column if k == pk_mapping.source_column else k): v
        for k, v in pk_value.items()
    }


def _map_columns(payload: Mapping[str, Any], columns: Sequence[ColumnMapping]) -> Dict[str, Any]:
    mapped: Dict[str, Any] = {}
    for column in columns:
        if column.transform is TransformType.CONSTANT:
            mapped[column.target] = column.value
        elif column.source in payload:
            mapped[column.target] = payload[column.source]
    return mapped


def map_payload(payload: Optional[Mapping[str, Any]], mapping: TableMapping) -> Optional[Dict[str, Any]]:
    """Payload in the target table's columns; deletes stay ``None``."""
    if payload is None:
        return None
    if mapping.column_mappings:
        return _map_columns(payload, mapping.column_mappings)

    excluded = {c.lower() for c in mapping.excluded_columns}
    mapped = {k: v for k, v in payload.items() if k.lower() not in excluded}
    pk = mapping.pk_mapping
    if pk is not None and pk.source_column in mapped:
        mapped[pk.target_column] = mapped.pop(pk.source_column)
    return mapped


def apply_mapping(entry: SyncLogEntry, config: MappingConfig,
                  direction: MappingDirection) -> List[SyncLogEntry]:
    """Entries to sync in place of ``entry``; empty when it is skipped.

    Mapped entries keep the source version, origin and timestamp.
    """
    mapping = config.find_mapping(entry.table_name, direction)
    if mapping is None:
        if config.unmapped_table_behavior is UnmappedTableBehavior.PASSTHROUGH:
            return [entry]
        logger.debug("No %s mapping for %s; skipping %s", direction.value, entry.table_name, entry.entry_id)
        return []
    if not mapping.enabled:
        logger.debug("Mapping %s is disabled; skipping %s", mapping.id, entry.entry_id)
        return []

    pk_value = map_primary_key(entry.pk_value, mapping.pk_mapping)
    if mapping.targets:
        return [
            replace(
                entry,
                table_name=target.table,
                pk_value=pk_value,
                payload=None if entry.payload is None else _map_columns(entry.payload, target.column_mappings),
            )
            for target in mapping.targets
        ]
    return [replace(
        entry,
        table_name=mapping.target_table or mapping.source_table,
        pk_value=pk_value,
        payload=map_payload(entry.payload, mapping),
    )]


# ---------------------------------------------------------------------------
# Per-mapping progress
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MappingState:
    mapping_id: str
    direction: MappingDirection
    last_synced_version: int = 0
    last_sync_timestamp: Optional[datetime] = None
    records_synced: int = 0

    def should_sync(self, version: int) -> bool:
        return version > self.last_synced_version

    def advance(self, through_version: int, count: int, now: datetime) -> "MappingState":
        return replace(
            self,
            last_synced_version=max(self.last_synced_version, through_version),
            last_sync_timestamp=now,
            records_synced=self.records_synced + count,
        )


class MappingTracker:
    """Maps entries for one sync direction and records per-mapping progress.

    With tracking enabled on a mapping, entries at or below its last synced
    version are skipped even if the replica cursor was moved back.
    """

    def __init__(self, config: MappingConfig, direction: MappingDirection, replica):
        self.config = config
        self.direction = direction
        self.replica = replica
        self._states: Dict[str, MappingState] = {}
        self._mapping_ids: Dict[str, str] = {}

    def state(self, mapping_id: str) -> MappingState:
        if mapping_id not in self._states:
            self._states[mapping_id] = self.replica.mapping_state(mapping_id, self.direction)
        return self._states[mapping_id]

    def map(self, entry: SyncLogEntry) -> List[SyncLogEntry]:
        mapping = self.config.find_mapping(entry.table_name, self.direction)
        if mapping is not None and mapping.enabled and mapping.sync_tracking.enabled:
            if not self.state(mapping.id).should_sync(entry.version):
                logger.debug("Skipping %s: already synced through mapping %s", entry.entry_id, mapping.id)
                return []
        mapped = apply_mapping(entry, self.config, self.direction)
        if mapping is not None:
            for m in mapped:
                self._mapping_ids[m.entry_id] = mapping.id
        return mapped

    def record(self, synced: Sequence[SyncLogEntry], through_version: int, now: datetime) -> None:
        """Advance the state of every tracked mapping that carried ``synced`` entries."""
        counts: Dict[str, int] = {}
        for entry in synced:
            mapping_id = self._mapping_ids.pop(entry.entry_id, None)
            if mapping_id is not None:
                counts[mapping_id] = counts.get(mapping_id, 0) + 1
        for mapping_id, count in counts.items():
            state = self.state(mapping_id).advance(through_version, count, now)
            self._states[mapping_id] = state
            self.replica.save_mapping_state(state)
