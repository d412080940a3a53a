"""
deployment-sync core package

Reconciles destination Deployments against their sources as described by
DeploymentSync intents.
"""

__version__ = "1.0.0"

from .errors import ReconcileError, SchemaError, StoreError, StoreErrorKind, SyncErrorKind
from .models import DeploymentSync, ObjectKey, WorkloadResource, ControllerSettings

__all__ = [
    "ReconcileError",
    "SchemaError",
    "StoreError",
    "StoreErrorKind",
    "SyncErrorKind",
    "DeploymentSync",
    "ObjectKey",
    "WorkloadResource",
    "ControllerSettings",
]
