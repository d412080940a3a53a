"""
Workload resource models.

Object identity (``ObjectKey``, ``ObjectMeta``) and the Deployment payload
that is copied from the source namespace to the destination namespace.
"""

import copy
from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class ObjectKey(BaseModel):
    """Namespace/name pair identifying one object in the store"""
    model_config = ConfigDict(frozen=True)

    namespace: str
    name: str

    @field_validator('namespace', 'name')
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError('namespace and name must be non-empty')
        return v.strip()

    @classmethod
    def parse(cls, value: str) -> 'ObjectKey':
        """Parse a ``namespace/name`` string"""
        namespace, sep, name = value.partition('/')
        if not sep:
            raise ValueError(f"Expected NAMESPACE/NAME, got: {value!r}")
        return cls(namespace=namespace, name=name)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class ObjectMeta(BaseModel):
    """Subset of object metadata the controller reads or sets"""
    model_config = ConfigDict(
        populate_by_name=True,
        extra="allow"
    )

    name: str
    namespace: str
    uid: Optional[str] = None
    resource_version: Optional[str] = Field(default=None, alias="resourceVersion")
    generation: Optional[int] = None
    creation_timestamp: Optional[datetime] = Field(default=None, alias="creationTimestamp")
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(namespace=self.namespace, name=self.name)


class WorkloadResource(BaseModel):
    """
    A Deployment as stored on the platform.

    ``spec`` is the desired state propagated by the controller. ``status`` is
    written by the platform and never touched here. Unknown top-level fields
    are preserved so an update round-trips what was read.
    """
    model_config = ConfigDict(
        populate_by_name=True,
        extra="allow"
    )

    api_version: str = Field(default="apps/v1", alias="apiVersion")
    kind: str = "Deployment"
    metadata: ObjectMeta
    spec: Dict[str, Any] = Field(default_factory=dict)
    status: Dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> ObjectKey:
        return self.metadata.key

    @classmethod
    def from_object(cls, data: Dict[str, Any]) -> 'WorkloadResource':
        """Build from a raw store object"""
        return cls.model_validate(data)

    @classmethod
    def new_destination(cls, key: ObjectKey, spec: Dict[str, Any]) -> 'WorkloadResource':
        """Fresh object at ``key`` carrying a deep copy of ``spec``"""
        return cls(
            metadata=ObjectMeta(name=key.name, namespace=key.namespace),
            spec=copy.deepcopy(spec)
        )

    def with_spec(self, spec: Dict[str, Any]) -> 'WorkloadResource':
        """Copy of this object whose spec is replaced wholesale by ``spec``"""
        updated = self.model_copy(deep=True)
        updated.spec = copy.deepcopy(spec)
        return updated

    def to_object(self) -> Dict[str, Any]:
        """Serialize with wire field names"""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
