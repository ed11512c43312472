"""Typed sync errors.

Every failure the engine can report is a ``SyncError`` carrying a
``SyncErrorKind``. Callers branch on the kind (or the subclass); the HTTP
layer serialises the same shape with ``to_payload`` and the client turns
it back into the typed error with ``error_from_payload``.
"""

from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


class SyncErrorKind(str, Enum):
    STORAGE_ERROR = "storage_error"
    DEPENDENCY_VIOLATION = "dependency_violation"
    HASH_MISMATCH = "hash_mismatch"
    FULL_RESYNC_REQUIRED = "full_resync_required"
    UNKNOWN_STRATEGY = "unknown_strategy"
    INVALID_INPUT = "invalid_input"
    DEFERRED_CHANGES_FAILED = "deferred_changes_failed"


class SyncError(Exception):
    kind: SyncErrorKind = SyncErrorKind.STORAGE_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "detail": self.message}


class StorageError(SyncError):
    """The underlying store was unreachable or rejected the operation."""

    kind = SyncErrorKind.STORAGE_ERROR


class InvalidInput(SyncError):
    kind = SyncErrorKind.INVALID_INPUT


class UnknownStrategy(SyncError):
    kind = SyncErrorKind.UNKNOWN_STRATEGY

    def __init__(self, strategy: Any):
        super().__init__(f"Unknown conflict strategy: {strategy!r}")
        self.strategy = strategy


class DependencyViolation(SyncError):
    """A change referenced a row that has not arrived yet.

    Recoverable: the coordinator defers the entry and retries it.
    """

    kind = SyncErrorKind.DEPENDENCY_VIOLATION

    def __init__(self, entry, detail: str = ""):
        super().__init__(
            f"Dependency violation applying {entry.entry_id}: {detail}".rstrip(": ")
        )
        self.entry = entry
        self.detail = detail


class HashMismatch(SyncError):
    kind = SyncErrorKind.HASH_MISMATCH

    def __init__(self, expected: str, actual: str):
        super().__init__(f"Batch hash mismatch: expected {expected}, computed {actual}")
        self.expected = expected
        self.actual = actual

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload.update({"expected": self.expected, "actual": self.actual})
        return payload


class FullResyncRequired(SyncError):
    kind = SyncErrorKind.FULL_RESYNC_REQUIRED

    def __init__(self, client_version: int, oldest_available_version: int):
        super().__init__(
            f"Client at version {client_version} is behind retained history "
            f"(oldest available {oldest_available_version}); full resync required"
        )
        self.client_version = client_version
        self.oldest_available_version = oldest_available_version

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload.update({
            "clientVersion": self.client_version,
            "oldestAvailableVersion": self.oldest_available_version,
        })
        return payload


class DeferredChangesFailed(SyncError):
    """Entries still failing after every retry pass.

    Carries the failing entries (or, when they came back from a remote,
    only their ``version:tableName`` identifiers) so operators can look
    for cyclic or unresolvable dependencies.
    """

    kind = SyncErrorKind.DEFERRED_CHANGES_FAILED

    def __init__(self, entries: Iterable = (), passes: int = 0,
                 failed_ids: Optional[List[str]] = None):
        self.entries = list(entries)
        self.passes = passes
        self.failed_ids = failed_ids if failed_ids is not None else [
            e.entry_id for e in self.entries
        ]
        super().__init__(
            f"{len(self.failed_ids)} change(s) could not be applied after "
            f"{passes} retry pass(es): {', '.join(self.failed_ids)}"
        )

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload.update({"failed": self.failed_ids, "passes": self.passes})
        return payload


def error_from_payload(payload: Dict[str, Any], fallback: str = "") -> SyncError:
    """Rebuild a typed error from an error body produced by ``to_payload``."""
    kind = payload.get("kind")
    detail = payload.get("detail") or fallback
    if not isinstance(detail, str):
        detail = str(detail)

    if kind == SyncErrorKind.FULL_RESYNC_REQUIRED.value:
        return FullResyncRequired(
            int(payload.get("clientVersion", 0)),
            int(payload.get("oldestAvailableVersion", 0)),
        )
    if kind == SyncErrorKind.HASH_MISMATCH.value:
        return HashMismatch(payload.get("expected", ""), payload.get("actual", ""))
    if kind == SyncErrorKind.DEFERRED_CHANGES_FAILED.value:
        return DeferredChangesFailed(
            passes=int(payload.get("passes", 0)),
            failed_ids=list(payload.get("failed", [])),
        )
    if kind == SyncErrorKind.INVALID_INPUT.value:
        return InvalidInput(detail)
    if kind == SyncErrorKind.UNKNOWN_STRATEGY.value:
        return UnknownStrategy(detail)
    return StorageError(detail)
