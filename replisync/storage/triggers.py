"""Change-capture triggers for SQLite.

Each tracked table gets AFTER INSERT/UPDATE/DELETE triggers writing one
``_sync_log`` row per change, stamped with this replica's origin ID. The
triggers stay silent while ``_sync_session.sync_active`` is set, which is
how remote changes are applied without being re-captured.
"""

import logging
import re
from typing import List, Sequence

from sqlalchemy import inspect, text
from sqlalchemy.orm import Session

from replisync.storage import state
from replisync.storage.state import storage_errors
from replisync.sync.errors import InvalidInput, StorageError

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_OPERATIONS = (("INSERT", "insert", "NEW"), ("UPDATE", "update", "NEW"), ("DELETE", "delete", "OLD"))
_TRIGGER_PREFIX = "_sync_trg_"


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name or ""):
        raise InvalidInput(f"Not a trackable identifier: {name!r}")
    return name


def _json_object(columns: Sequence[str], ref: str) -> str:
    return "json_object(" + ", ".join(f"'{c}', {ref}.\"{c}\"" for c in columns) + ")"


def _trigger_name(table_name: str, op: str) -> str:
    return f"{_TRIGGER_PREFIX}{table_name}_{op}"


def build_trigger_sql(table_name: str, columns: Sequence[str], pk_columns: Sequence[str]) -> List[str]:
    """CREATE TRIGGER statements capturing changes to ``table_name``."""
    _check_identifier(table_name)
    for c in list(columns) + list(pk_columns):
        _check_identifier(c)

    statements = []
    for event, op, ref in _OPERATIONS:
        payload = "NULL" if op == "delete" else _json_object(columns, ref)
        statements.append(
            f"CREATE TRIGGER \"{_trigger_name(table_name, op)}\"\n"
            f"AFTER {event} ON \"{table_name}\"\n"
            f"WHEN COALESCE((SELECT sync_active FROM _sync_session WHERE id = 1), 0) = 0\n"
            f"BEGIN\n"
            f"    INSERT INTO _sync_log (table_name, pk_value, operation, payload, origin, timestamp)\n"
            f"    VALUES (\n"
            f"        '{table_name}',\n"
            f"        {_json_object(pk_columns, ref)},\n"
            f"        '{op}',\n"
            f"        {payload},\n"
            f"        (SELECT value FROM _sync_state WHERE key = '{state.ORIGIN_ID}'),\n"
            f"        strftime('%Y-%m-%dT%H:%M:%fZ', 'now')\n"
            f"    );\n"
            f"END"
        )
    return statements


def _drop_triggers(db: Session, table_name: str) -> None:
    for _, op, _ in _OPERATIONS:
        db.execute(text(f"DROP TRIGGER IF EXISTS \"{_trigger_name(table_name, op)}\""))


def track_table(db: Session, table_name: str) -> None:
    """Install capture triggers on ``table_name``.

    Existing triggers are replaced, so re-tracking after a schema change
    picks up added or removed columns.
    """
    _check_identifier(table_name)
    bind = db.connection()
    if bind.dialect.name != "sqlite":
        raise StorageError(f"Change capture triggers are not available for {bind.dialect.name}")

    state.ensure_sync_state(db)
    inspector = inspect(bind)
    if not inspector.has_table(table_name):
        raise StorageError(f"Unknown table: {table_name}")

    columns = [c["name"] for c in inspector.get_columns(table_name)]
    pk_columns = inspector.get_pk_constraint(table_name).get("constrained_columns") or []
    if not pk_columns:
        raise InvalidInput(f"Table {table_name} has no primary key")

    statements = build_trigger_sql(table_name, columns, pk_columns)
    with storage_errors(f"installing triggers on {table_name}"):
        _drop_triggers(db, table_name)
        for statement in statements:
            db.execute(text(statement))
    logger.info("Tracking %s (pk: %s)", table_name, ", ".join(pk_columns))


def untrack_table(db: Session, table_name: str) -> None:
    _check_identifier(table_name)
    with storage_errors(f"removing triggers from {table_name}"):
        _drop_triggers(db, table_name)
    logger.info("Stopped tracking %s", table_name)


def tracked_tables(db: Session) -> List[str]:
    with storage_errors("listing triggers"):
        rows = db.execute(
            text("SELECT name FROM sqlite_master WHERE type = 'trigger'")
        ).scalars().all()
    names = set()
    for name in rows:
        if not name.startswith(_TRIGGER_PREFIX):
            continue
        for _, op, _ in _OPERATIONS:
            suffix = f"_{op}"
            if name.endswith(suffix):
                names.add(name[len(_TRIGGER_PREFIX):-len(suffix)])
    return sorted(names)
