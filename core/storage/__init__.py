"""
Storage package for deployment-sync.

Provides the object-store contract, deadline propagation, an in-memory store
and the Kubernetes-backed store.
"""

from .base import ObjectStore, ResourceKind, WatchEvent, WatchEventType
from .deadline import Deadline
from .memory import InMemoryObjectStore

__all__ = [
    "ObjectStore",
    "ResourceKind",
    "WatchEvent",
    "WatchEventType",
    "Deadline",
    "InMemoryObjectStore",
]
