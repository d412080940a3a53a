"""
deployment-sync - keeps Deployments synchronized across namespaces.

A small Kubernetes controller: each DeploymentSync object names a source
namespace, a destination namespace and a Deployment, and the controller
keeps the destination's spec equal to the source's.
"""

__version__ = "1.0.0"

from core.models.intent import DeploymentSync, DeploymentSyncSpec, DeploymentSyncStatus
from core.models.config import ControllerSettings
from core.sync.reconciler import DeploymentSyncReconciler, ReconcileResult, SyncAction
from core.sync.engine import SyncController

__all__ = [
    "DeploymentSync",
    "DeploymentSyncSpec",
    "DeploymentSyncStatus",
    "ControllerSettings",
    "DeploymentSyncReconciler",
    "ReconcileResult",
    "SyncAction",
    "SyncController",
    "__version__",
]
