"""
Object-store contract consumed by the controller.

Every call takes an explicit ``Deadline`` and reports failure only through
``StoreError`` tagged with a ``StoreErrorKind``.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from ..models.resources import ObjectKey
from .deadline import Deadline


class ResourceKind(Enum):
    """Object kinds the controller reads and writes"""
    DEPLOYMENT_SYNC = "DeploymentSync"
    DEPLOYMENT = "Deployment"


class WatchEventType(Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


class WatchEvent(BaseModel):
    """Change notification for one object"""
    model_config = ConfigDict(frozen=True)

    type: WatchEventType
    kind: ResourceKind
    key: ObjectKey
    generation: Optional[int] = None  # metadata.generation, unchanged by status writes


class ObjectStore(ABC):
    """Async object-store API with optimistic concurrency"""

    @abstractmethod
    async def get(self, kind: ResourceKind, key: ObjectKey, deadline: Deadline) -> Dict[str, Any]:
        """Fetch one object; ``NOT_FOUND`` if absent"""

    @abstractmethod
    async def create(self, kind: ResourceKind, obj: Dict[str, Any], deadline: Deadline) -> Dict[str, Any]:
        """Create an object; ``CONFLICT`` if it already exists"""

    @abstractmethod
    async def update(self, kind: ResourceKind, obj: Dict[str, Any], deadline: Deadline) -> Dict[str, Any]:
        """
        Replace an object.

        ``metadata.resourceVersion`` of ``obj`` is the version token; a stale
        token fails with ``CONFLICT``. The stored status is left as is.
        """

    @abstractmethod
    async def update_status(self, kind: ResourceKind, obj: Dict[str, Any], deadline: Deadline) -> Dict[str, Any]:
        """Write only the ``status`` of an existing object"""

    @abstractmethod
    async def list_keys(self, kind: ResourceKind, deadline: Deadline) -> List[ObjectKey]:
        """Keys of every object of ``kind`` visible to the controller"""

    @abstractmethod
    def watch(self, kind: ResourceKind) -> AsyncIterator[WatchEvent]:
        """Stream change events for ``kind`` until the consumer stops iterating"""

    async def close(self) -> None:
        """Release client resources"""
