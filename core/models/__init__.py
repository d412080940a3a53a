"""
Core data models for deployment-sync

All Pydantic models for sync intents, workload resources and configuration.
"""

from .resources import ObjectKey, ObjectMeta, WorkloadResource
from .intent import (
    DeploymentSync, DeploymentSyncSpec, DeploymentSyncStatus,
    INTENT_GROUP, INTENT_VERSION, INTENT_KIND, INTENT_PLURAL
)
from .config import ControllerSettings

__all__ = [
    # Resources
    "ObjectKey",
    "ObjectMeta",
    "WorkloadResource",

    # Intents
    "DeploymentSync",
    "DeploymentSyncSpec",
    "DeploymentSyncStatus",
    "INTENT_GROUP",
    "INTENT_VERSION",
    "INTENT_KIND",
    "INTENT_PLURAL",

    # Configuration
    "ControllerSettings",
]
