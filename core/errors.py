"""
Error taxonomy for deployment-sync.

Object stores raise a single exception type tagged with a closed
``StoreErrorKind``; the reconciler translates those into ``ReconcileError``
instances tagged with a ``SyncErrorKind``. Callers branch on the ``kind``
attribute, never on the message text.
"""

from enum import Enum
from typing import Optional


class StoreErrorKind(Enum):
    """Failure classes reported by an object store"""
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"      # create race or stale resourceVersion
    CANCELLED = "cancelled"    # deadline expired or cancelled by caller
    OTHER = "other"


class StoreError(Exception):
    """Failure of a single object-store call"""

    def __init__(self, kind: StoreErrorKind, message: str, key: Optional[object] = None):
        super().__init__(message)
        self.kind = kind
        self.key = key

    @classmethod
    def not_found(cls, key: object, kind_name: str = "object") -> "StoreError":
        return cls(StoreErrorKind.NOT_FOUND, f"{kind_name} {key} not found", key)

    @classmethod
    def conflict(cls, key: object, message: str) -> "StoreError":
        return cls(StoreErrorKind.CONFLICT, message, key)

    @classmethod
    def cancelled(cls, key: Optional[object] = None) -> "StoreError":
        target = f" for {key}" if key is not None else ""
        return cls(StoreErrorKind.CANCELLED, f"deadline exceeded{target}", key)

    def __str__(self) -> str:
        return f"[{self.kind.value}] {super().__str__()}"


class SchemaError(ValueError):
    """A stored Sync Intent object could not be deserialized"""


class SyncErrorKind(Enum):
    """
    Reasons a reconciliation attempt can fail.

    A missing intent is not listed: it completes successfully with nothing
    to do. A failed status write is not listed either: it is logged and the
    reconciliation still succeeds.
    """
    INTENT_FETCH = "intent_fetch"
    SCHEMA = "schema"
    SOURCE_NOT_FOUND = "source_not_found"
    SOURCE_FETCH = "source_fetch"
    DESTINATION_FETCH = "destination_fetch"
    DESTINATION_CONFLICT = "destination_conflict"
    DESTINATION_WRITE = "destination_write"
    CANCELLED = "cancelled"


class ReconcileError(Exception):
    """A reconciliation attempt that the dispatcher should act on"""

    def __init__(
        self,
        kind: SyncErrorKind,
        key: object,
        message: str,
        cause: Optional[BaseException] = None
    ):
        super().__init__(message)
        self.kind = kind
        self.key = key
        self.cause = cause

    @property
    def retryable(self) -> bool:
        """Malformed stored data cannot be fixed by retrying"""
        return self.kind != SyncErrorKind.SCHEMA

    def __str__(self) -> str:
        return f"{self.kind.value} ({self.key}): {super().__str__()}"
