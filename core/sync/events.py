"""
Reconcile request models.

A request names one DeploymentSync key and why it was enqueued. The key is
all a reconcile needs; the reason is kept for logging and metrics.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field

from ..models.resources import ObjectKey
from ..storage.base import WatchEvent, WatchEventType


class RequestReason(Enum):
    """Why a key was put on the work queue"""
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RESYNC = "resync"     # periodic full relist
    RETRY = "retry"       # backoff after a failed reconcile
    MANUAL = "manual"     # requested through the CLI or API


class ReconcileRequest(BaseModel):
    """One unit of work for the controller"""
    model_config = ConfigDict(frozen=True)

    key: ObjectKey
    reason: RequestReason
    timestamp: datetime = Field(default_factory=datetime.now)

    @classmethod
    def from_watch_event(cls, event: WatchEvent) -> 'ReconcileRequest':
        reason = {
            WatchEventType.ADDED: RequestReason.ADDED,
            WatchEventType.MODIFIED: RequestReason.MODIFIED,
            WatchEventType.DELETED: RequestReason.DELETED,
        }[event.type]
        return cls(key=event.key, reason=reason)

    @property
    def age_seconds(self) -> float:
        return (datetime.now() - self.timestamp).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization"""
        return {
            "key": str(self.key),
            "reason": self.reason.value,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        return f"{self.reason.value.upper()}: {self.key}"
