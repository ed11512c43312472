"""Deterministic hashing of change batches and table contents.

Both ends of a transfer must serialise identically, so everything goes
through ``to_canonical_json``: object keys sorted at every depth, no
insignificant whitespace, UTF-8 text.
"""

import hashlib
import hmac
import json
from typing import Any, Callable, Iterable, Mapping, Sequence


def to_canonical_json(value: Any) -> str:
    """Serialise ``value`` with sorted keys and compact separators."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def compute_batch_hash(entries: Sequence) -> str:
    """Hash an ordered sequence of log entries.

    Order matters: a permutation of the same entries yields a different hash.
    """
    return sha256_hex(to_canonical_json([e.to_wire() for e in entries]))


def verify_hash(entries: Sequence, expected: str) -> bool:
    return hmac.compare_digest(compute_batch_hash(entries), expected or "")


def compute_database_hash(
    table_names: Iterable[str],
    fetch_rows: Callable[[str], Iterable[Mapping[str, Any]]],
) -> str:
    """Hash the contents of ``table_names``.

    ``fetch_rows`` must yield each table's rows ordered by primary key.
    Tables are hashed in sorted name order so the caller's ordering is
    irrelevant; two replicas with equal contents produce equal hashes.
    """
    digest = hashlib.sha256()
    for name in sorted(set(table_names)):
        digest.update(name.encode("utf-8"))
        digest.update(b"\n")
        for row in fetch_rows(name):
            digest.update(to_canonical_json(dict(row)).encode("utf-8"))
            digest.update(b"\n")
    return digest.hexdigest()
