"""Apply log entries to user tables through reflected SQLAlchemy tables."""

import logging
from typing import Any, Dict, List

from sqlalchemy import MetaData, Table, and_, delete, insert, select, update
from sqlalchemy.exc import DBAPIError, NoSuchTableError
from sqlalchemy.orm import Session

from replisync.sync.contracts import ChangeApplier
from replisync.sync.entry import SyncLogEntry, SyncOperation
from replisync.sync.errors import DependencyViolation, InvalidInput, StorageError

logger = logging.getLogger(__name__)

_FK_MARKERS = ("foreign key", "foreign_key")
_PG_FOREIGN_KEY_VIOLATION = "23503"


def is_dependency_violation(exc: Exception) -> bool:
    """Whether a DB error is a foreign-key violation."""
    orig = getattr(exc, "orig", exc)
    if getattr(orig, "pgcode", None) == _PG_FOREIGN_KEY_VIOLATION:
        return True
    message = str(orig).lower()
    return any(marker in message for marker in _FK_MARKERS)


class SqlChangeApplier(ChangeApplier):
    def __init__(self, db: Session):
        self.db = db
        self._metadata = MetaData()
        self._tables: Dict[str, Table] = {}

    def table(self, table_name: str) -> Table:
        table = self._tables.get(table_name)
        if table is None:
            try:
                table = Table(table_name, self._metadata, autoload_with=self.db.connection())
            except NoSuchTableError:
                raise StorageError(f"Unknown table: {table_name}")
            except DBAPIError as exc:
                raise StorageError(f"Could not reflect {table_name}: {exc}") from exc
            self._tables[table_name] = table
        return table

    def primary_key_columns(self, table_name: str) -> List[str]:
        return [c.name for c in self.table(table_name).primary_key.columns]

    def rows(self, table_name: str) -> List[Dict[str, Any]]:
        """Every row of ``table_name`` ordered by primary key."""
        table = self.table(table_name)
        order = list(table.primary_key.columns) or list(table.columns)
        try:
            result = self.db.execute(select(table).order_by(*order))
        except DBAPIError as exc:
            raise StorageError(f"Could not read {table_name}: {exc}") from exc
        return [dict(r) for r in result.mappings()]

    def row_keys(self, table_name: str) -> List[Dict[str, Any]]:
        table = self.table(table_name)
        columns = list(table.primary_key.columns)
        try:
            result = self.db.execute(select(*columns).order_by(*columns))
        except DBAPIError as exc:
            raise StorageError(f"Could not read {table_name}: {exc}") from exc
        return [dict(r) for r in result.mappings()]

    def apply_change(self, entry: SyncLogEntry) -> None:
        if not entry.pk_value:
            raise InvalidInput(f"{entry.entry_id} has an empty primary key")
        if entry.operation is not SyncOperation.DELETE and entry.payload is None:
            raise InvalidInput(f"{entry.entry_id} is an {entry.operation.value} without payload")

        table = self.table(entry.table_name)
        self._check_columns(table, entry.pk_value, entry)
        where = and_(*[table.c[k] == v for k, v in entry.pk_value.items()])

        values: Dict[str, Any] = {}
        if entry.operation is not SyncOperation.DELETE:
            values = {**entry.payload, **entry.pk_value}
            self._check_columns(table, values, entry)

        try:
            with self.db.begin_nested():
                if entry.operation is SyncOperation.DELETE:
                    self.db.execute(delete(table).where(where))
                else:
                    # Upsert: an insert may land on an existing row and an
                    # update on a missing one; both converge on the payload.
                    result = self.db.execute(update(table).where(where).values(values))
                    if result.rowcount == 0:
                        self.db.execute(insert(table).values(values))
        except DBAPIError as exc:
            if is_dependency_violation(exc):
                raise DependencyViolation(entry, str(exc.orig)) from exc
            raise StorageError(f"Could not apply {entry.entry_id}: {exc.orig}") from exc
        logger.debug("Applied %s %s %s", entry.entry_id, entry.operation.value, entry.pk_value)

    @staticmethod
    def _check_columns(table: Table, values: Dict[str, Any], entry: SyncLogEntry) -> None:
        unknown = [k for k in values if k not in table.c]
        if unknown:
            raise StorageError(
                f"{entry.entry_id} references unknown column(s) "
                f"{', '.join(sorted(unknown))} on {table.name}"
            )
