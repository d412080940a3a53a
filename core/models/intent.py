"""
DeploymentSync intent model.

A DeploymentSync names a source namespace, a destination namespace and the
Deployment to copy between them. Its status records when the controller last
wrote the destination.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import SchemaError
from .resources import ObjectKey, ObjectMeta


INTENT_GROUP = "sync.example.com"
INTENT_VERSION = "v1"
INTENT_KIND = "DeploymentSync"
INTENT_PLURAL = "deploymentsyncs"


class DeploymentSyncSpec(BaseModel):
    """Desired source -> destination copy relationship"""
    model_config = ConfigDict(
        populate_by_name=True,
        extra="forbid",
        str_strip_whitespace=True
    )

    source_namespace: str = Field(alias="sourceNamespace")
    destination_namespace: str = Field(alias="destinationNamespace")
    resource_name: str = Field(alias="resourceName")

    @field_validator('source_namespace', 'destination_namespace', 'resource_name')
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError('must be a non-empty string')
        return v


class DeploymentSyncStatus(BaseModel):
    """Observed sync status, read by external observers only"""
    model_config = ConfigDict(
        populate_by_name=True,
        extra="forbid"
    )

    last_sync_time: Optional[datetime] = Field(default=None, alias="lastSyncTime")


class DeploymentSync(BaseModel):
    """Schema for the deploymentsyncs API"""
    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore"
    )

    api_version: str = Field(default=f"{INTENT_GROUP}/{INTENT_VERSION}", alias="apiVersion")
    kind: str = INTENT_KIND
    metadata: ObjectMeta
    spec: DeploymentSyncSpec
    status: DeploymentSyncStatus = Field(default_factory=DeploymentSyncStatus)

    @field_validator('kind')
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if v != INTENT_KIND:
            raise ValueError(f'kind must be {INTENT_KIND}, got {v}')
        return v

    @classmethod
    def from_object(cls, data: Dict[str, Any]) -> 'DeploymentSync':
        """
        Validate a raw store object.

        Raises:
            SchemaError: if required fields are missing, a spec/status field
                is unknown, or a value has the wrong type
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            name = (data.get("metadata") or {}).get("name", "<unknown>") if isinstance(data, dict) else "<unknown>"
            raise SchemaError(f"Invalid {INTENT_KIND} {name}: {e}") from e

    @property
    def key(self) -> ObjectKey:
        return self.metadata.key

    @property
    def source_key(self) -> ObjectKey:
        return ObjectKey(namespace=self.spec.source_namespace, name=self.spec.resource_name)

    @property
    def destination_key(self) -> ObjectKey:
        return ObjectKey(namespace=self.spec.destination_namespace, name=self.spec.resource_name)

    def mark_synced(self, when: Optional[datetime] = None) -> None:
        """Record a successful destination write"""
        self.status.last_sync_time = when or datetime.now(timezone.utc)

    def to_object(self) -> Dict[str, Any]:
        """Serialize with wire field names"""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def __str__(self) -> str:
        return (
            f"{INTENT_KIND} {self.key}: "
            f"{self.source_key} -> {self.destination_key}"
        )
