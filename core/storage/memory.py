"""
In-memory object store.

Implements the full ``ObjectStore`` contract (versioning, optimistic
concurrency, status subresource, watches) without a cluster, with write
journaling and fault injection for the test suites.
"""

import asyncio
import copy
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from ..errors import StoreError, StoreErrorKind
from ..models.resources import ObjectKey
from .base import ObjectStore, ResourceKind, WatchEvent, WatchEventType
from .deadline import Deadline

logger = logging.getLogger(__name__)


@dataclass
class WriteRecord:
    """One successful mutation, kept for inspection"""
    operation: str
    kind: ResourceKind
    key: ObjectKey
    resource_version: Optional[str]


class InMemoryObjectStore(ObjectStore):
    """
    Dict-backed object store.

    Objects are deep-copied on the way in and out so callers can never
    mutate stored state without a write call.
    """

    def __init__(self, latency_seconds: float = 0.0):
        self.latency_seconds = latency_seconds
        self._objects: Dict[ResourceKind, Dict[ObjectKey, Dict[str, Any]]] = defaultdict(dict)
        self._version = 0
        self._lock = asyncio.Lock()
        self._injected: Dict[Tuple[str, ResourceKind], List[StoreError]] = defaultdict(list)
        self._subscribers: Dict[ResourceKind, List[asyncio.Queue]] = defaultdict(list)

        self.writes: List[WriteRecord] = []
        self.calls: Dict[str, int] = defaultdict(int)

    # Test helpers

    def seed(self, kind: ResourceKind, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Insert an object directly, bypassing conflicts and watches"""
        stored = self._stamp_new(copy.deepcopy(obj))
        self._objects[kind][self._key_of(stored)] = stored
        return copy.deepcopy(stored)

    def peek(self, kind: ResourceKind, key: ObjectKey) -> Optional[Dict[str, Any]]:
        """Stored object without going through the async API"""
        stored = self._objects[kind].get(key)
        return copy.deepcopy(stored) if stored is not None else None

    def fail_next(
        self,
        operation: str,
        kind: ResourceKind,
        error: StoreError,
        times: int = 1
    ) -> None:
        """Make the next ``times`` calls of ``operation`` on ``kind`` raise ``error``"""
        self._injected[(operation, kind)].extend([error] * times)

    def writes_for(self, kind: ResourceKind) -> List[WriteRecord]:
        return [w for w in self.writes if w.kind == kind]

    async def delete(self, kind: ResourceKind, key: ObjectKey) -> None:
        async with self._lock:
            if self._objects[kind].pop(key, None) is None:
                raise StoreError.not_found(key, kind.value)
            self.writes.append(WriteRecord("delete", kind, key, None))
        self._publish(WatchEventType.DELETED, kind, key, None)

    # ObjectStore API

    async def get(self, kind: ResourceKind, key: ObjectKey, deadline: Deadline) -> Dict[str, Any]:
        await self._enter("get", kind, key, deadline)
        stored = self._objects[kind].get(key)
        if stored is None:
            raise StoreError.not_found(key, kind.value)
        return copy.deepcopy(stored)

    async def create(self, kind: ResourceKind, obj: Dict[str, Any], deadline: Deadline) -> Dict[str, Any]:
        key = self._key_of(obj)
        await self._enter("create", kind, key, deadline)
        async with self._lock:
            if key in self._objects[kind]:
                raise StoreError.conflict(key, f"{kind.value} {key} already exists")
            stored = self._stamp_new(copy.deepcopy(obj))
            self._objects[kind][key] = stored
            self._record("create", kind, key, stored)
        self._publish(WatchEventType.ADDED, kind, key, stored["metadata"]["generation"])
        return copy.deepcopy(stored)

    async def update(self, kind: ResourceKind, obj: Dict[str, Any], deadline: Deadline) -> Dict[str, Any]:
        key = self._key_of(obj)
        await self._enter("update", kind, key, deadline)
        async with self._lock:
            current = self._require_current(kind, key, obj)
            stored = copy.deepcopy(obj)
            meta = stored.setdefault("metadata", {})
            # identity and platform-owned fields survive replacement
            for field in ("uid", "creationTimestamp"):
                if field in current["metadata"]:
                    meta[field] = current["metadata"][field]
            stored["status"] = copy.deepcopy(current.get("status", {}))
            if stored.get("spec") != current.get("spec"):
                meta["generation"] = current["metadata"].get("generation", 1) + 1
            else:
                meta["generation"] = current["metadata"].get("generation", 1)
            meta["resourceVersion"] = self._next_version()
            self._objects[kind][key] = stored
            self._record("update", kind, key, stored)
        self._publish(WatchEventType.MODIFIED, kind, key, stored["metadata"]["generation"])
        return copy.deepcopy(stored)

    async def update_status(self, kind: ResourceKind, obj: Dict[str, Any], deadline: Deadline) -> Dict[str, Any]:
        key = self._key_of(obj)
        await self._enter("update_status", kind, key, deadline)
        async with self._lock:
            current = self._require_current(kind, key, obj)
            stored = copy.deepcopy(current)
            stored["status"] = copy.deepcopy(obj.get("status", {}))
            stored["metadata"]["resourceVersion"] = self._next_version()
            self._objects[kind][key] = stored
            self._record("update_status", kind, key, stored)
        self._publish(WatchEventType.MODIFIED, kind, key, stored["metadata"]["generation"])
        return copy.deepcopy(stored)

    async def list_keys(self, kind: ResourceKind, deadline: Deadline) -> List[ObjectKey]:
        await self._enter("list", kind, None, deadline)
        return sorted(self._objects[kind].keys(), key=str)

    async def watch(self, kind: ResourceKind) -> AsyncIterator[WatchEvent]:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers[kind].append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers[kind].remove(queue)

    # Internals

    async def _enter(
        self,
        operation: str,
        kind: ResourceKind,
        key: Optional[ObjectKey],
        deadline: Deadline
    ) -> None:
        self.calls[operation] += 1
        deadline.check(key)
        if self.latency_seconds:
            await deadline.run(asyncio.sleep(self.latency_seconds), key)
        injected = self._injected.get((operation, kind))
        if injected:
            raise injected.pop(0)

    def _require_current(self, kind: ResourceKind, key: ObjectKey, obj: Dict[str, Any]) -> Dict[str, Any]:
        current = self._objects[kind].get(key)
        if current is None:
            raise StoreError.not_found(key, kind.value)
        expected = (obj.get("metadata") or {}).get("resourceVersion")
        actual = current["metadata"].get("resourceVersion")
        if expected is not None and expected != actual:
            raise StoreError(
                StoreErrorKind.CONFLICT,
                f"{kind.value} {key} has been modified: "
                f"resourceVersion {expected} is stale (current {actual})",
                key
            )
        return current

    def _stamp_new(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        meta = obj.setdefault("metadata", {})
        meta.pop("resourceVersion", None)
        meta["uid"] = str(uuid.uuid4())
        meta["creationTimestamp"] = datetime.now(timezone.utc).isoformat()
        meta["generation"] = 1
        meta["resourceVersion"] = self._next_version()
        obj.setdefault("status", {})
        return obj

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _record(self, operation: str, kind: ResourceKind, key: ObjectKey, stored: Dict[str, Any]) -> None:
        self.writes.append(
            WriteRecord(operation, kind, key, stored["metadata"]["resourceVersion"])
        )
        logger.debug(f"{operation} {kind.value} {key} -> rv {stored['metadata']['resourceVersion']}")

    def _publish(
        self,
        event_type: WatchEventType,
        kind: ResourceKind,
        key: ObjectKey,
        generation: Optional[int]
    ) -> None:
        event = WatchEvent(type=event_type, kind=kind, key=key, generation=generation)
        for queue in self._subscribers[kind]:
            queue.put_nowait(event)

    @staticmethod
    def _key_of(obj: Dict[str, Any]) -> ObjectKey:
        meta = obj.get("metadata") or {}
        try:
            return ObjectKey(namespace=meta["namespace"], name=meta["name"])
        except (KeyError, ValueError) as e:
            raise StoreError(StoreErrorKind.OTHER, f"object has no usable namespace/name: {e}")
